"""
Handover Protocol
The owner of a verified claim generates a one-time 6-digit code and shows it to
the finder (or cooperative staff) at the physical handover. Redeeming the code
closes the claim as RETURNED.
"""
import logging
import secrets
from datetime import timedelta

from .. import clock, config
from ..database import get_store
from ..errors import (
    AlreadyRedeemedError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidCodeError,
    InvalidStateError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from ..models import CLAIMS, ClaimStatus
from .audit_service import audited
from .crypto_service import hash_code, verify_code
from .status_service import (
    claim_transition_fields,
    mark_reports_returned,
    read_claim,
    read_claim_lock,
    read_claim_reports,
    release_claim_lock,
)
from .trust_service import TrustUpdate

_logger = logging.getLogger(__name__)


def empty_handover():
    return {
        'has_code': False,
        'code_hash': None,
        'expires_at': None,
        'redeemed': False,
        'redeem_attempts': 0,
        'generated_at': None,
        'generated_by': None,
        'redeemed_at': None,
        'redeemed_by': None,
        'attested_by': None,
    }


def _handover(claim):
    return {**empty_handover(), **(claim.get('handover') or {})}


def _attempts_remaining(handover):
    return max(0, config.MAX_REDEEM_ATTEMPTS - int(handover.get('redeem_attempts', 0)))


def _load_claim(claim_id):
    claim = get_store().get(CLAIMS, claim_id)
    if not claim:
        raise NotFoundError('Claim not found')
    return claim


def _can_redeem(claim, actor):
    if actor.user_id == claim.get('claimant_id'):
        return False
    if actor.user_id == claim.get('finder_id'):
        return True
    coop = claim.get('cooperative_id')
    return bool(actor.is_coop_staff and coop and coop == actor.cooperative_id)


def generate_code(claim_id, actor):
    """
    Issue a new handover code for a verified claim.

    Returns:
        dict: claim_id, otp (plaintext, shown once), expires_at
    """
    code = f"{secrets.randbelow(10 ** config.HANDOVER_CODE_DIGITS):0{config.HANDOVER_CODE_DIGITS}d}"
    code_hash = hash_code(code)

    with audited('claim.handover.generate', 'claim', claim_id, actor.user_id) as intent:
        def _generate(txn):
            claim = read_claim(txn, claim_id)
            if claim.get('claimant_id') != actor.user_id:
                raise ForbiddenError('Only the owner can generate a handover code')
            if claim.get('status') != ClaimStatus.VERIFIED.value:
                raise InvalidStateError('Handover codes are only available for verified claims',
                                        details={'status': claim.get('status')})
            now = clock.utcnow()
            handover = _handover(claim)
            expires_at = clock.as_utc(handover.get('expires_at'))
            if (handover['has_code'] and not handover['redeemed']
                    and expires_at and now < expires_at
                    and _attempts_remaining(handover) > 0):
                raise ConflictError('An active handover code already exists',
                                    details={'expires_at': expires_at.isoformat()})

            new_expiry = now + timedelta(hours=config.HANDOVER_CODE_VALIDITY_HOURS)
            handover.update({
                'has_code': True,
                'code_hash': code_hash,
                'expires_at': new_expiry,
                'redeemed': False,
                'redeem_attempts': 0,
                'generated_at': now,
                'generated_by': actor.user_id,
            })
            txn.update(CLAIMS, claim_id, {'handover': handover, 'updated_at': now})
            intent.commit(txn, before={'has_code': bool((claim.get('handover') or {}).get('has_code'))},
                          after={'has_code': True})
            return new_expiry

        expires_at = get_store().run_transaction(_generate)

    _logger.info("Handover code issued for claim %s, expires %s", claim_id, expires_at.isoformat())
    return {'claim_id': claim_id, 'otp': code, 'expires_at': expires_at.isoformat()}


def _check_redeemable(claim, handover, now):
    if handover['redeemed']:
        raise AlreadyRedeemedError('Handover code has already been redeemed')
    if claim.get('status') != ClaimStatus.VERIFIED.value or not handover['has_code']:
        raise InvalidStateError('No handover code is active for this claim',
                                details={'status': claim.get('status')})
    expires_at = clock.as_utc(handover.get('expires_at'))
    if not expires_at or now >= expires_at:
        raise ExpiredError('Handover code has expired, ask the owner for a new one')
    if _attempts_remaining(handover) <= 0:
        raise RateLimitedError('Too many incorrect codes, ask the owner for a new one',
                               details={'attempts_remaining': 0})


def redeem_code(claim_id, actor, code):
    """
    Redeem a handover code. On success the claim and both reports become RETURNED.

    Raises InvalidCodeError (after recording the attempt) when the code does not match.
    """
    code = str(code or '').strip()
    with audited('claim.handover.redeem', 'claim', claim_id, actor.user_id) as intent:
        claim = _load_claim(claim_id)
        if not _can_redeem(claim, actor):
            raise ForbiddenError('Only the finder or the cooperative holding the item can confirm handover')
        if len(code) != config.HANDOVER_CODE_DIGITS or not code.isdigit():
            raise ValidationError(f"Code must be {config.HANDOVER_CODE_DIGITS} digits", details={'field': 'otp'})

        handover = _handover(claim)
        _check_redeemable(claim, handover, clock.utcnow())
        checked_hash = handover['code_hash']
        matched = verify_code(code, checked_hash)

        def _redeem(txn):
            current = read_claim(txn, claim_id)
            if not _can_redeem(current, actor):
                raise ForbiddenError('Only the finder or the cooperative holding the item can confirm handover')
            now = clock.utcnow()
            state = _handover(current)
            _check_redeemable(current, state, now)
            lost, found = read_claim_reports(txn, current)
            lock = read_claim_lock(txn, current['lost_report_id'])
            trust = TrustUpdate(claim_id).read(txn, [current.get('claimant_id'), current.get('finder_id')])

            ok = matched if state['code_hash'] == checked_hash else verify_code(code, state['code_hash'])
            if not ok:
                state['redeem_attempts'] = int(state['redeem_attempts']) + 1
                txn.update(CLAIMS, claim_id, {'handover': state, 'updated_at': now})
                intent.commit(txn, before={'status': current['status']}, after={'status': current['status']},
                              redeem_attempts=state['redeem_attempts'])
                return False, _attempts_remaining(state)

            state.update({'redeemed': True, 'redeemed_at': now, 'redeemed_by': actor.user_id})
            updates = claim_transition_fields(current, ClaimStatus.RETURNED, now)
            updates['handover'] = state
            txn.update(CLAIMS, claim_id, updates)
            mark_reports_returned(txn, lost, found, now)
            release_claim_lock(txn, lock, claim_id)
            trust.write(txn, {**current, **updates})
            intent.commit(txn, before={'status': current['status']}, after={'status': updates['status']})
            return True, 0

        success, remaining = get_store().run_transaction(_redeem)

    if not success:
        _logger.info("Wrong handover code for claim %s, %d attempts remaining", claim_id, remaining)
        raise InvalidCodeError('Incorrect handover code', details={'attempts_remaining': remaining})

    _logger.info("Claim %s returned, handover confirmed by %s", claim_id, actor.user_id)
    return {'claim_id': claim_id, 'status': ClaimStatus.RETURNED.value, 'redeemed': True}


def get_handover_status(claim_id, actor):
    """Code metadata for participants; never the code or its hash."""
    claim = _load_claim(claim_id)
    participant = actor.user_id == claim.get('claimant_id') or _can_redeem(claim, actor)
    if not (participant or actor.is_admin):
        raise ForbiddenError('Not a participant in this claim')
    handover = _handover(claim)
    expires_at = clock.as_utc(handover.get('expires_at'))
    return {
        'claim_id': claim_id,
        'has_code': handover['has_code'],
        'expires_at': clock.isoformat_or_none(expires_at),
        'expired': bool(expires_at and clock.utcnow() >= expires_at),
        'redeemed': handover['redeemed'],
        'attempts_remaining': _attempts_remaining(handover),
        'redeemed_at': clock.isoformat_or_none(handover.get('redeemed_at')),
        'attested_by': handover.get('attested_by'),
    }
