"""
Status Service for claims and reports.
Holds the claim state machine and the transactional helpers every lifecycle
operation uses to move a claim and its reports between statuses.

Claim workflow:
- PENDING -> VERIFIED (challenge passed)
- PENDING -> REJECTED (verification attempts exhausted)
- PENDING | VERIFIED -> DISPUTED (dispute opened)
- REJECTED -> DISPUTED (only when the claim was never disputed before)
- PENDING | VERIFIED -> CANCELLED (claimant withdrew)
- PENDING -> EXPIRED (no verification activity, scheduled sweep)
- VERIFIED -> RETURNED (handover code redeemed)
- DISPUTED -> RETURNED | REJECTED (dispute resolved)
"""
from ..errors import InvalidStateError, NotFoundError
from ..models import (
    CLAIM_LOCKS,
    CLAIMS,
    FOUND_REPORTS,
    LOST_REPORTS,
    ClaimStatus,
    FoundReportStatus,
    LostReportStatus,
)

CLAIM_TRANSITIONS = {
    'PENDING': ['VERIFIED', 'REJECTED', 'DISPUTED', 'CANCELLED', 'EXPIRED'],
    'VERIFIED': ['RETURNED', 'DISPUTED', 'CANCELLED'],
    'DISPUTED': ['RETURNED', 'REJECTED'],
    'REJECTED': ['DISPUTED'],
    'RETURNED': [],  # Final status
    'CANCELLED': [],  # Final status
    'EXPIRED': [],  # Final status
}

# Claims in these statuses hold the single-active-claim guard for their lost report
ACTIVE_CLAIM_STATUSES = ('PENDING', 'VERIFIED', 'DISPUTED')
CLOSED_CLAIM_STATUSES = ('RETURNED', 'REJECTED', 'CANCELLED', 'EXPIRED')

LOST_REPORT_TRANSITIONS = {
    'ACTIVE': ['CLAIMED', 'RETURNED', 'EXPIRED'],
    'CLAIMED': ['ACTIVE', 'RETURNED'],
    'RETURNED': [],
    'EXPIRED': [],
}

FOUND_REPORT_TRANSITIONS = {
    'UNCLAIMED': ['MATCHED', 'RETURNED', 'EXPIRED'],
    'MATCHED': ['UNCLAIMED', 'RETURNED'],
    'RETURNED': [],
    'EXPIRED': [],
}


def _value(status):
    return getattr(status, 'value', status)


def validate_claim_transition(current_status, new_status):
    """
    Validate if a claim status transition is allowed.

    Returns:
        tuple: (is_valid, error_message)
    """
    current = _value(current_status)
    new = _value(new_status)
    if current not in CLAIM_TRANSITIONS:
        return False, f"Invalid current status: {current}"
    if new not in CLAIM_TRANSITIONS[current]:
        return False, f"Invalid transition from {current} to {new}"
    return True, "Valid transition"


def ensure_claim_transition(current_status, new_status):
    ok, message = validate_claim_transition(current_status, new_status)
    if not ok:
        raise InvalidStateError(message, details={'status': _value(current_status)})


def get_allowed_claim_transitions(current_status):
    return list(CLAIM_TRANSITIONS.get(_value(current_status), []))


def is_claim_active(status) -> bool:
    return _value(status) in ACTIVE_CLAIM_STATUSES


def _ensure_report_transition(table, kind, current, new):
    if current == new:
        return
    if new not in table.get(current, []):
        raise InvalidStateError(f"Invalid {kind} transition from {current} to {new}")


# ----------------------------------------------------------------------
# Transactional helpers. Callers read everything first, then write.
# ----------------------------------------------------------------------

def read_claim(txn, claim_id):
    claim = txn.get(CLAIMS, claim_id)
    if not claim:
        raise NotFoundError('Claim not found')
    return claim


def read_claim_reports(txn, claim):
    """Return (lost_report, found_report) for a claim inside a transaction."""
    lost = txn.get(LOST_REPORTS, claim['lost_report_id'])
    found = txn.get(FOUND_REPORTS, claim['found_report_id'])
    if not lost or not found:
        raise NotFoundError('Report referenced by claim no longer exists')
    return lost, found


def claim_transition_fields(claim, new_status, now):
    """Fields to write for a claim moving to new_status; validates against the table."""
    ensure_claim_transition(claim['status'], new_status)
    new = _value(new_status)
    fields = {'status': new, 'updated_at': now}
    if new in CLOSED_CLAIM_STATUSES:
        fields['closed_at'] = now
    else:
        fields['closed_at'] = None
    if new == ClaimStatus.VERIFIED.value:
        fields['verified_at'] = now
    return fields


def write_lost_status(txn, lost, new_status, now):
    new = _value(new_status)
    _ensure_report_transition(LOST_REPORT_TRANSITIONS, 'lost report', lost['status'], new)
    if lost['status'] != new:
        txn.update(LOST_REPORTS, lost['lost_report_id'], {'status': new, 'updated_at': now})


def write_found_status(txn, found, new_status, now):
    new = _value(new_status)
    _ensure_report_transition(FOUND_REPORT_TRANSITIONS, 'found report', found['status'], new)
    if found['status'] != new:
        txn.update(FOUND_REPORTS, found['found_report_id'], {'status': new, 'updated_at': now})


def release_reports(txn, lost, found, now, held=True):
    """
    Put claimed/matched reports back on the market after a claim closes without a return.
    `held` says whether this claim ever verified; only then are the reports its to release.
    """
    if not held:
        return
    if lost['status'] == LostReportStatus.CLAIMED.value:
        write_lost_status(txn, lost, LostReportStatus.ACTIVE, now)
    if found['status'] == FoundReportStatus.MATCHED.value:
        write_found_status(txn, found, FoundReportStatus.UNCLAIMED, now)


def mark_reports_returned(txn, lost, found, now):
    write_lost_status(txn, lost, LostReportStatus.RETURNED, now)
    write_found_status(txn, found, FoundReportStatus.RETURNED, now)


def mark_pair_rejected(txn, lost, found_report_id, now):
    rejected = list(lost.get('rejected_found_report_ids') or [])
    if found_report_id not in rejected:
        rejected.append(found_report_id)
    txn.update(LOST_REPORTS, lost['lost_report_id'], {
        'rejected_found_report_ids': rejected,
        'updated_at': now,
    })


def read_claim_lock(txn, lost_report_id):
    return txn.get(CLAIM_LOCKS, lost_report_id)


def acquire_claim_lock(txn, lost_report_id, claim_id, now):
    txn.set(CLAIM_LOCKS, lost_report_id, {
        'lost_report_id': lost_report_id,
        'claim_id': claim_id,
        'acquired_at': now,
    })


def release_claim_lock(txn, lock, claim_id):
    """Drop the single-active-claim guard if this claim holds it."""
    if lock and lock.get('claim_id') == claim_id:
        txn.delete(CLAIM_LOCKS, lock['lost_report_id'])


__all__ = [
    'ACTIVE_CLAIM_STATUSES',
    'CLAIM_TRANSITIONS',
    'CLOSED_CLAIM_STATUSES',
    'ClaimStatus',
    'acquire_claim_lock',
    'claim_transition_fields',
    'ensure_claim_transition',
    'get_allowed_claim_transitions',
    'is_claim_active',
    'mark_pair_rejected',
    'mark_reports_returned',
    'read_claim',
    'read_claim_lock',
    'read_claim_reports',
    'release_claim_lock',
    'release_reports',
    'validate_claim_transition',
    'write_found_status',
    'write_lost_status',
]
