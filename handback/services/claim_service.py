"""
Claim service for the claim lifecycle:
- Start a claim on a lost/found pair
- Verify ownership (verification_service)
- Hand the item over with a one-time code (handover_service)
- Dispute and resolve (dispute_service)
- Cancel, and expire stale pending claims

This module is the entry point the API layer uses; the step-specific
operations are re-exported from their services.
"""
import logging
import uuid
from datetime import timedelta

from .. import clock, config
from ..database import get_store
from ..errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from ..models import (
    CLAIMS,
    FOUND_REPORTS,
    LOST_REPORTS,
    SYSTEM_ACTOR,
    ClaimStatus,
    FoundReportStatus,
    LostReportStatus,
)
from .audit_service import audited
from .dispute_service import add_evidence, get_dispute, list_disputes, mark_under_review, open_dispute, resolve_dispute
from .handover_service import empty_handover, generate_code, get_handover_status, redeem_code
from .status_service import (
    acquire_claim_lock,
    claim_transition_fields,
    read_claim,
    read_claim_lock,
    read_claim_reports,
    release_claim_lock,
    release_reports,
)
from .verification_service import VerificationState, get_questions, submit_answers

_logger = logging.getLogger(__name__)

_TIMESTAMP_FIELDS = ('created_at', 'updated_at', 'closed_at', 'verified_at', 'last_activity_at')
_HANDOVER_TIMESTAMPS = ('expires_at', 'generated_at', 'redeemed_at')


def _generate_claim_id():
    return f"C{uuid.uuid4().hex[:10].upper()}"


def serialize_claim(claim):
    """Claim as returned by the API: ISO timestamps, no code hash."""
    out = dict(claim)
    for key in _TIMESTAMP_FIELDS:
        if key in out:
            out[key] = clock.isoformat_or_none(out[key])

    verification = dict(out.get('verification') or {})
    for key in ('cooldown_until', 'last_failure_at'):
        verification[key] = clock.isoformat_or_none(verification.get(key))
    verification['attempt_log'] = [
        {**entry, 'at': clock.isoformat_or_none(entry.get('at'))}
        for entry in verification.get('attempt_log') or []
    ]
    verification['attempts_remaining'] = VerificationState.from_dict(claim.get('verification')).attempts_remaining()
    out['verification'] = verification

    handover = dict(out.get('handover') or {})
    handover.pop('code_hash', None)
    for key in _HANDOVER_TIMESTAMPS:
        handover[key] = clock.isoformat_or_none(handover.get(key))
    out['handover'] = handover
    return out


def _is_participant(claim, actor):
    if actor.user_id in (claim.get('claimant_id'), claim.get('finder_id')):
        return True
    coop = claim.get('cooperative_id')
    return bool(actor.is_coop_staff and coop and coop == actor.cooperative_id)


def create_claim(actor, lost_report_id, found_report_id):
    """
    Start a claim: the owner of a lost report asserts that a found report is their item.

    Returns:
        dict: the new claim
    """
    if not lost_report_id or not found_report_id:
        raise ValidationError('lost_report_id and found_report_id are required')

    claim_id = _generate_claim_id()
    with audited('claim.create', 'claim', claim_id, actor.user_id) as intent:
        def _create(txn):
            lost = txn.get(LOST_REPORTS, lost_report_id)
            if not lost:
                raise NotFoundError('Lost report not found')
            found = txn.get(FOUND_REPORTS, found_report_id)
            if not found:
                raise NotFoundError('Found report not found')
            lock = read_claim_lock(txn, lost_report_id)

            if lost.get('owner_id') != actor.user_id:
                raise ForbiddenError('Only the owner of the lost report can claim it')
            if found.get('finder_id') == actor.user_id:
                raise ForbiddenError('You cannot claim an item you reported as found')
            if lost.get('status') != LostReportStatus.ACTIVE.value:
                raise InvalidStateError(f"Lost report is {lost.get('status')}", details={'status': lost.get('status')})
            if found.get('status') != FoundReportStatus.UNCLAIMED.value:
                raise InvalidStateError(f"Found report is {found.get('status')}", details={'status': found.get('status')})
            if lost.get('category') != found.get('category'):
                raise InvalidStateError('Lost and found reports are in different categories')
            if found_report_id in (lost.get('rejected_found_report_ids') or []):
                raise ConflictError('A claim on this item was already rejected')
            if lock:
                raise ConflictError('Another claim is already active for this lost report',
                                    details={'claim_id': lock.get('claim_id')})

            now = clock.utcnow()
            claim = {
                'claim_id': claim_id,
                'lost_report_id': lost_report_id,
                'found_report_id': found_report_id,
                'claimant_id': actor.user_id,
                'finder_id': found.get('finder_id'),
                'cooperative_id': found.get('cooperative_id'),
                'category': lost.get('category'),
                'status': ClaimStatus.PENDING.value,
                'verification': VerificationState().to_dict(),
                'handover': empty_handover(),
                'dispute_id': None,
                'verified_at': None,
                'closed_at': None,
                'last_activity_at': now,
                'created_at': now,
                'updated_at': now,
            }
            txn.create(CLAIMS, claim_id, claim)
            acquire_claim_lock(txn, lost_report_id, claim_id, now)
            txn.update(LOST_REPORTS, lost_report_id, {
                'claim_count': int(lost.get('claim_count', 0)) + 1,
                'updated_at': now,
            })
            # Keeps the inactivity sweep from expiring a report that was just claimed
            txn.update(FOUND_REPORTS, found_report_id, {'updated_at': now})
            intent.commit(txn, before={}, after={'status': claim['status']},
                          lost_report_id=lost_report_id, found_report_id=found_report_id)
            return claim

        claim = get_store().run_transaction(_create)

    _logger.info("Claim %s started by %s for %s / %s", claim_id, actor.user_id, lost_report_id, found_report_id)
    return serialize_claim(claim)


def get_claim(claim_id, actor):
    claim = get_store().get(CLAIMS, claim_id)
    if not claim:
        raise NotFoundError('Claim not found')
    if not (actor.is_admin or _is_participant(claim, actor)):
        raise ForbiddenError('Not a participant in this claim')
    return serialize_claim(claim)


def list_user_claims(actor, status=None):
    """Claims the user made or that concern items they found, newest first."""
    if status:
        try:
            status = ClaimStatus(str(status).upper()).value
        except ValueError:
            raise ValidationError('Invalid status filter', details={'field': 'status'})

    store = get_store()
    claims = {c['claim_id']: c for c in store.query(CLAIMS, [('claimant_id', '==', actor.user_id)])}
    for c in store.query(CLAIMS, [('finder_id', '==', actor.user_id)]):
        claims.setdefault(c['claim_id'], c)

    rows = [c for c in claims.values() if not status or c.get('status') == status]
    rows.sort(key=lambda c: clock.as_utc(c.get('created_at')), reverse=True)
    return [serialize_claim(c) for c in rows]


def cancel_claim(claim_id, actor):
    """
    Withdraw a pending or verified claim. Only the claimant may cancel.
    Reports held by the claim go back to ACTIVE/UNCLAIMED.
    """
    with audited('claim.cancel', 'claim', claim_id, actor.user_id) as intent:
        def _cancel(txn):
            claim = read_claim(txn, claim_id)
            if claim.get('claimant_id') != actor.user_id:
                raise ForbiddenError('Only the claimant can cancel this claim')
            if claim.get('status') not in (ClaimStatus.PENDING.value, ClaimStatus.VERIFIED.value):
                raise InvalidStateError(f"Cannot cancel a {claim.get('status')} claim",
                                        details={'status': claim.get('status')})
            lost, found = read_claim_reports(txn, claim)
            lock = read_claim_lock(txn, claim['lost_report_id'])

            now = clock.utcnow()
            updates = claim_transition_fields(claim, ClaimStatus.CANCELLED, now)
            updates['cancelled_by'] = actor.user_id
            txn.update(CLAIMS, claim_id, updates)
            release_reports(txn, lost, found, now, held=claim['status'] == ClaimStatus.VERIFIED.value)
            release_claim_lock(txn, lock, claim_id)
            intent.commit(txn, before={'status': claim['status']}, after={'status': updates['status']})
            return {**claim, **updates}

        claim = get_store().run_transaction(_cancel)

    _logger.info('Claim %s cancelled by user %s', claim_id, actor.user_id)
    return serialize_claim(claim)


def _expire_claim(claim_id, cutoff):
    with audited('claim.expire', 'claim', claim_id, SYSTEM_ACTOR.user_id) as intent:
        def _expire(txn):
            claim = read_claim(txn, claim_id)
            if claim.get('status') != ClaimStatus.PENDING.value:
                return False
            last_activity = clock.as_utc(claim.get('last_activity_at') or claim.get('created_at'))
            if last_activity >= cutoff:
                return False
            lock = read_claim_lock(txn, claim['lost_report_id'])
            now = clock.utcnow()
            updates = claim_transition_fields(claim, ClaimStatus.EXPIRED, now)
            txn.update(CLAIMS, claim_id, updates)
            release_claim_lock(txn, lock, claim_id)
            intent.commit(txn, before={'status': claim['status']}, after={'status': updates['status']})
            return True

        return get_store().run_transaction(_expire)


def expire_stale_claims(now=None):
    """
    Expire PENDING claims with no verification activity for CLAIM_EXPIRY_DAYS.

    Returns:
        dict: expired count and claim ids
    """
    now = now or clock.utcnow()
    cutoff = now - timedelta(days=config.CLAIM_EXPIRY_DAYS)
    expired = []
    for claim in get_store().query(CLAIMS, [('status', '==', ClaimStatus.PENDING.value)]):
        last_activity = clock.as_utc(claim.get('last_activity_at') or claim.get('created_at'))
        if last_activity >= cutoff:
            continue
        if _expire_claim(claim['claim_id'], cutoff):
            expired.append(claim['claim_id'])
    _logger.info("Claim expiry sweep: %d expired", len(expired))
    return {'expired': len(expired), 'claim_ids': expired}


__all__ = [
    'add_evidence',
    'cancel_claim',
    'create_claim',
    'expire_stale_claims',
    'generate_code',
    'get_claim',
    'get_dispute',
    'get_handover_status',
    'get_questions',
    'list_disputes',
    'list_user_claims',
    'mark_under_review',
    'open_dispute',
    'redeem_code',
    'resolve_dispute',
    'serialize_claim',
    'submit_answers',
]
