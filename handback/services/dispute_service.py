"""
Dispute Service
Handles disputes raised by a claimant or finder and their resolution by an admin.

Outcomes:
- RESOLVED_OWNER: the claimant is the owner; the claim is RETURNED without a handover code
- RESOLVED_FINDER: the claim was not genuine; the claim is REJECTED
- DISMISSED: the dispute had no merit; the claim is REJECTED
"""
import logging
import uuid

from .. import clock, config
from ..database import get_store
from ..errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from ..models import (
    ACTIVE_DISPUTE_STATUSES,
    CLAIMS,
    DISPUTE_OUTCOMES,
    DISPUTES,
    ClaimStatus,
    DisputeStatus,
    FoundReportStatus,
)
from .audit_service import audited
from .status_service import (
    acquire_claim_lock,
    claim_transition_fields,
    mark_pair_rejected,
    mark_reports_returned,
    read_claim,
    read_claim_lock,
    read_claim_reports,
    release_claim_lock,
    release_reports,
)
from .trust_service import TrustUpdate

_logger = logging.getLogger(__name__)

DISPUTABLE_CLAIM_STATUSES = (
    ClaimStatus.PENDING.value,
    ClaimStatus.VERIFIED.value,
    ClaimStatus.REJECTED.value,
)

_TIMESTAMP_FIELDS = ('created_at', 'updated_at', 'reviewed_at', 'resolved_at')


def generate_dispute_id():
    """Generate a unique dispute ID"""
    return f"D{uuid.uuid4().hex[:10].upper()}"


def serialize_dispute(dispute):
    out = dict(dispute)
    for key in _TIMESTAMP_FIELDS:
        if key in out:
            out[key] = clock.isoformat_or_none(out[key])
    return out


def _clean_reason(reason):
    text = reason.strip() if isinstance(reason, str) else ''
    if len(text) < config.DISPUTE_MIN_REASON_LENGTH:
        raise ValidationError(
            f"Reason must be at least {config.DISPUTE_MIN_REASON_LENGTH} characters",
            details={'field': 'reason'},
        )
    return text


def _clean_evidence(evidence, already=0):
    if evidence is None:
        return []
    if not isinstance(evidence, list) or not all(isinstance(e, str) and e.strip() for e in evidence):
        raise ValidationError('Evidence must be a list of non-empty references', details={'field': 'evidence'})
    if already + len(evidence) > config.DISPUTE_MAX_EVIDENCE:
        raise ValidationError(
            f"At most {config.DISPUTE_MAX_EVIDENCE} evidence references are allowed",
            details={'field': 'evidence'},
        )
    return [e.strip() for e in evidence]


def _is_party(dispute, actor):
    return actor.user_id in (dispute.get('claimant_id'), dispute.get('finder_id'))


def open_dispute(claim_id, actor, reason, evidence=None):
    """
    Open a dispute on a claim.

    Args:
        claim_id (str): the disputed claim
        actor (Actor): the claimant or the finder
        reason (str): at least 20 characters after trimming
        evidence (list): optional evidence references (at most 10)

    Returns:
        dict: the new dispute
    """
    reason = _clean_reason(reason)
    evidence = _clean_evidence(evidence)

    with audited('claim.dispute.open', 'claim', claim_id, actor.user_id, reason=reason) as intent:
        def _open(txn):
            claim = read_claim(txn, claim_id)
            if actor.user_id not in (claim.get('claimant_id'), claim.get('finder_id')):
                raise ForbiddenError('Only the claimant or the finder can dispute this claim')
            previous = txn.get(DISPUTES, claim['dispute_id']) if claim.get('dispute_id') else None
            if previous and previous.get('status') in ACTIVE_DISPUTE_STATUSES:
                raise ConflictError('A dispute is already open for this claim',
                                    details={'dispute_id': previous['dispute_id']})
            status = claim.get('status')
            reopening = status == ClaimStatus.REJECTED.value
            if status not in DISPUTABLE_CLAIM_STATUSES or (reopening and previous):
                raise InvalidStateError(f"A {status} claim cannot be disputed", details={'status': status})

            lost, found = read_claim_reports(txn, claim)
            lock = read_claim_lock(txn, claim['lost_report_id'])
            trust = TrustUpdate(claim_id).read(txn, [claim.get('claimant_id'), claim.get('finder_id')])
            if reopening:
                if lock and lock.get('claim_id') != claim_id:
                    raise ConflictError('Another claim is active for this lost report',
                                        details={'claim_id': lock.get('claim_id')})
                if found.get('status') != FoundReportStatus.UNCLAIMED.value or lost.get('status') != 'ACTIVE':
                    raise InvalidStateError('The reported items are no longer available for this claim')

            now = clock.utcnow()
            dispute_id = generate_dispute_id()
            dispute = {
                'dispute_id': dispute_id,
                'claim_id': claim_id,
                'opened_by': actor.user_id,
                'claimant_id': claim.get('claimant_id'),
                'finder_id': claim.get('finder_id'),
                'reason': reason,
                'evidence': evidence,
                'status': DisputeStatus.OPEN.value,
                'claim_status_at_open': status,
                'reviewed_by': None,
                'review_notes': None,
                'resolved_by': None,
                'resolution_notes': None,
                'resolved_at': None,
                'created_at': now,
                'updated_at': now,
            }
            updates = claim_transition_fields(claim, ClaimStatus.DISPUTED, now)
            updates['dispute_id'] = dispute_id
            txn.create(DISPUTES, dispute_id, dispute)
            txn.update(CLAIMS, claim_id, updates)
            if reopening:
                acquire_claim_lock(txn, claim['lost_report_id'], claim_id, now)
            trust.write(txn, {**claim, **updates}, dispute)
            intent.commit(txn, before={'status': status}, after={'status': updates['status']},
                          dispute_id=dispute_id)
            return dispute

        dispute = get_store().run_transaction(_open)

    _logger.info("Dispute %s opened on claim %s by %s", dispute['dispute_id'], claim_id, actor.user_id)
    return serialize_dispute(dispute)


def get_dispute(dispute_id, actor):
    dispute = get_store().get(DISPUTES, dispute_id)
    if not dispute:
        raise NotFoundError('Dispute not found')
    if not (actor.is_admin or _is_party(dispute, actor)):
        raise ForbiddenError('Not a party to this dispute')
    return serialize_dispute(dispute)


def list_disputes(actor, status=None, limit=20):
    """
    Admin review queue, newest first.

    Args:
        actor (Actor): must be an admin
        status (str): optional dispute status filter
        limit (int): page size, 1-100

    Returns:
        dict: disputes and the total matching the filter
    """
    if not actor.is_admin:
        raise ForbiddenError('Admin access required')
    filters = []
    if status:
        try:
            filters.append(('status', '==', DisputeStatus(str(status).strip().upper()).value))
        except ValueError:
            raise ValidationError('Invalid status filter', details={'field': 'status'})
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise ValidationError('limit must be a number', details={'field': 'limit'})
    if not 1 <= limit <= 100:
        raise ValidationError('limit must be between 1 and 100', details={'field': 'limit'})

    disputes = get_store().query(DISPUTES, filters)
    disputes.sort(key=lambda d: clock.as_utc(d.get('created_at')), reverse=True)
    return {
        'disputes': [serialize_dispute(d) for d in disputes[:limit]],
        'total': len(disputes),
    }


def mark_under_review(dispute_id, actor, notes=None):
    """Admin takes an open dispute into review."""
    if not actor.is_admin:
        raise ForbiddenError('Admin access required')

    with audited('dispute.review', 'dispute', dispute_id, actor.user_id, reason=notes) as intent:
        def _review(txn):
            dispute = txn.get(DISPUTES, dispute_id)
            if not dispute:
                raise NotFoundError('Dispute not found')
            if dispute['status'] != DisputeStatus.OPEN.value:
                raise InvalidStateError(f"Dispute is {dispute['status']}", details={'status': dispute['status']})
            now = clock.utcnow()
            updates = {
                'status': DisputeStatus.UNDER_REVIEW.value,
                'reviewed_by': actor.user_id,
                'review_notes': notes,
                'reviewed_at': now,
                'updated_at': now,
            }
            txn.update(DISPUTES, dispute_id, updates)
            intent.commit(txn, before={'status': dispute['status']}, after={'status': updates['status']})
            return {**dispute, **updates}

        dispute = get_store().run_transaction(_review)
    return serialize_dispute(dispute)


def add_evidence(dispute_id, actor, evidence):
    """Append evidence references to an unresolved dispute."""
    if not evidence:
        raise ValidationError('No evidence provided', details={'field': 'evidence'})

    def _add(txn):
        dispute = txn.get(DISPUTES, dispute_id)
        if not dispute:
            raise NotFoundError('Dispute not found')
        if not _is_party(dispute, actor):
            raise ForbiddenError('Only the claimant or the finder can add evidence')
        if dispute['status'] not in ACTIVE_DISPUTE_STATUSES:
            raise InvalidStateError('Dispute is already resolved', details={'status': dispute['status']})
        existing = list(dispute.get('evidence') or [])
        combined = existing + _clean_evidence(evidence, already=len(existing))
        now = clock.utcnow()
        txn.update(DISPUTES, dispute_id, {'evidence': combined, 'updated_at': now})
        return {**dispute, 'evidence': combined, 'updated_at': now}

    dispute = get_store().run_transaction(_add)
    _logger.info("Evidence added to dispute %s by %s", dispute_id, actor.user_id)
    return serialize_dispute(dispute)


def resolve_dispute(dispute_id, actor, outcome, notes=None):
    """
    Resolve a dispute and close its claim accordingly, applying trust changes
    in the same transaction.

    Returns:
        dict: dispute and resulting claim status
    """
    if not actor.is_admin:
        raise ForbiddenError('Admin access required')
    outcome = str(outcome or '').strip().upper()
    if outcome not in DISPUTE_OUTCOMES:
        raise ValidationError('Invalid outcome', details={'field': 'outcome', 'allowed': list(DISPUTE_OUTCOMES)})

    with audited('dispute.resolve', 'dispute', dispute_id, actor.user_id, reason=notes) as intent:
        def _resolve(txn):
            dispute = txn.get(DISPUTES, dispute_id)
            if not dispute:
                raise NotFoundError('Dispute not found')
            if dispute['status'] not in ACTIVE_DISPUTE_STATUSES:
                raise InvalidStateError('Dispute is already resolved', details={'status': dispute['status']})
            claim = read_claim(txn, dispute['claim_id'])
            lost, found = read_claim_reports(txn, claim)
            lock = read_claim_lock(txn, claim['lost_report_id'])
            trust = TrustUpdate(claim['claim_id']).read(txn, [claim.get('claimant_id'), claim.get('finder_id')])
            held = bool(claim.get('verified_at')) and dispute.get('claim_status_at_open') == ClaimStatus.VERIFIED.value
            if (outcome == DisputeStatus.RESOLVED_OWNER.value and not held
                    and found.get('status') != FoundReportStatus.UNCLAIMED.value):
                raise InvalidStateError('The found item is held by another claim')

            now = clock.utcnow()
            if outcome == DisputeStatus.RESOLVED_OWNER.value:
                updates = claim_transition_fields(claim, ClaimStatus.RETURNED, now)
                handover = dict(claim.get('handover') or {})
                handover['attested_by'] = actor.user_id
                updates['handover'] = handover
                mark_reports_returned(txn, lost, found, now)
            else:
                updates = claim_transition_fields(claim, ClaimStatus.REJECTED, now)
                release_reports(txn, lost, found, now, held=held)
                mark_pair_rejected(txn, lost, claim['found_report_id'], now)

            dispute_updates = {
                'status': outcome,
                'resolved_by': actor.user_id,
                'resolution_notes': notes,
                'resolved_at': now,
                'updated_at': now,
            }
            txn.update(CLAIMS, claim['claim_id'], updates)
            txn.update(DISPUTES, dispute_id, dispute_updates)
            release_claim_lock(txn, lock, claim['claim_id'])
            resolved = {**dispute, **dispute_updates}
            trust.write(txn, {**claim, **updates}, resolved)
            intent.commit(
                txn,
                before={'status': dispute['status'], 'claim_status': claim['status']},
                after={'status': outcome, 'claim_status': updates['status']},
                claim_id=claim['claim_id'],
            )
            return resolved, updates['status']

        resolved, claim_status = get_store().run_transaction(_resolve)

    _logger.info("Dispute %s resolved as %s by %s", dispute_id, outcome, actor.user_id)
    return {'dispute': serialize_dispute(resolved), 'claim_status': claim_status}
