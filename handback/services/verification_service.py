"""
Verification Challenge
The claimant proves ownership by answering the lost report's three secret
questions. Two correct answers out of three pass.

Rate limiting per claim:
- Cooldown of 1h, 4h, then 24h after the 1st, 2nd and 3rd failure
- At most 3 attempts in any rolling 24 hours
- The 3rd failure exhausts the claim: it is REJECTED and no further attempts are possible
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional

from .. import clock, config
from ..database import get_store
from ..errors import ForbiddenError, InvalidStateError, NotFoundError, RateLimitedError, ValidationError
from ..models import CLAIMS, ClaimStatus, FoundReportStatus, LostReportStatus
from .audit_service import audited
from .crypto_service import verify_answer
from .report_service import get_question_texts, load_answer_hashes
from .status_service import (
    claim_transition_fields,
    mark_pair_rejected,
    read_claim,
    read_claim_lock,
    read_claim_reports,
    release_claim_lock,
    write_found_status,
    write_lost_status,
)
from .trust_service import TrustUpdate

_logger = logging.getLogger(__name__)


def cooldown_for_failure(failure_number: int) -> timedelta:
    """Cooldown imposed after the given (1-based) failure; escalation caps at the last step."""
    steps = config.COOLDOWN_HOURS
    index = min(max(failure_number, 1), len(steps)) - 1
    return timedelta(hours=steps[index])


@dataclass(frozen=True)
class VerificationState:
    """Verification counters embedded on a claim. Methods return new states."""
    attempts: int = 0
    failures: int = 0
    cooldown_until: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    attempt_log: List[dict] = field(default_factory=list)
    verification_score: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'VerificationState':
        data = data or {}
        return cls(
            attempts=int(data.get('attempts', 0)),
            failures=int(data.get('failures', 0)),
            cooldown_until=clock.as_utc(data.get('cooldown_until')),
            last_failure_at=clock.as_utc(data.get('last_failure_at')),
            attempt_log=[
                {**entry, 'at': clock.as_utc(entry.get('at'))}
                for entry in (data.get('attempt_log') or [])
            ],
            verification_score=data.get('verification_score'),
        )

    def to_dict(self) -> dict:
        return {
            'attempts': self.attempts,
            'failures': self.failures,
            'cooldown_until': self.cooldown_until,
            'last_failure_at': self.last_failure_at,
            'attempt_log': list(self.attempt_log),
            'verification_score': self.verification_score,
        }

    @property
    def exhausted(self) -> bool:
        return self.failures >= config.MAX_VERIFICATION_FAILURES

    def attempts_remaining(self) -> int:
        return max(0, config.MAX_VERIFICATION_FAILURES - self.failures)

    def attempts_in_window(self, now: datetime) -> List[datetime]:
        window_start = now - timedelta(hours=config.ATTEMPT_WINDOW_HOURS)
        return sorted(e['at'] for e in self.attempt_log if e.get('at') and e['at'] > window_start)

    def check_can_attempt(self, now: datetime):
        """Raise RateLimitedError if no attempt may be made at `now`."""
        if self.exhausted:
            raise RateLimitedError(
                'Verification attempts exhausted for this claim',
                details={'attempts_remaining': 0},
            )
        if self.cooldown_until and now < self.cooldown_until:
            raise RateLimitedError(
                'Too many failed attempts, try again later',
                details={
                    'attempts_remaining': self.attempts_remaining(),
                    'cooldown_until': self.cooldown_until.isoformat(),
                    'retry_after': int((self.cooldown_until - now).total_seconds()) + 1,
                },
            )
        recent = self.attempts_in_window(now)
        if len(recent) >= config.MAX_ATTEMPTS_PER_WINDOW:
            reopens_at = recent[0] + timedelta(hours=config.ATTEMPT_WINDOW_HOURS)
            raise RateLimitedError(
                'Daily verification attempt limit reached',
                details={
                    'attempts_remaining': self.attempts_remaining(),
                    'cooldown_until': reopens_at.isoformat(),
                    'retry_after': int((reopens_at - now).total_seconds()) + 1,
                },
            )

    def record_failure(self, now: datetime, correct_count: int) -> 'VerificationState':
        failures = self.failures + 1
        return replace(
            self,
            attempts=self.attempts + 1,
            failures=failures,
            cooldown_until=now + cooldown_for_failure(failures),
            last_failure_at=now,
            attempt_log=self.attempt_log + [{'at': now, 'passed': False, 'correct_count': correct_count}],
            verification_score=correct_count,
        )

    def record_success(self, now: datetime, correct_count: int) -> 'VerificationState':
        return replace(
            self,
            attempts=self.attempts + 1,
            cooldown_until=None,
            attempt_log=self.attempt_log + [{'at': now, 'passed': True, 'correct_count': correct_count}],
            verification_score=correct_count,
        )


def _ensure_claimant(claim, actor):
    if claim.get('claimant_id') != actor.user_id:
        raise ForbiddenError('Only the claimant can answer verification questions')


def _ensure_pending(claim):
    if claim.get('status') != ClaimStatus.PENDING.value:
        raise InvalidStateError(
            f"Claim is {claim.get('status')}, verification is only possible while PENDING",
            details={'status': claim.get('status')},
        )


def _load_claim(claim_id):
    claim = get_store().get(CLAIMS, claim_id)
    if not claim:
        raise NotFoundError('Claim not found')
    return claim


def get_questions(claim_id, actor):
    """
    Return the secret question texts for a pending claim.

    Returns:
        dict: claim_id, questions (3 texts), attempts_remaining
    """
    claim = _load_claim(claim_id)
    _ensure_claimant(claim, actor)
    state = VerificationState.from_dict(claim.get('verification'))
    state.check_can_attempt(clock.utcnow())
    _ensure_pending(claim)
    return {
        'claim_id': claim_id,
        'questions': get_question_texts(claim['lost_report_id']),
        'attempts_remaining': state.attempts_remaining(),
    }


def _validate_answers(answers):
    if not isinstance(answers, list) or len(answers) != config.SECRET_QUESTION_COUNT:
        raise ValidationError(f"Exactly {config.SECRET_QUESTION_COUNT} answers are required",
                              details={'field': 'answers'})
    if not all(isinstance(a, str) for a in answers):
        raise ValidationError('Answers must be strings', details={'field': 'answers'})


def submit_answers(claim_id, actor, answers):
    """
    Check the claimant's answers and record the attempt.

    A failed attempt is a normal result, not an error, so its counters commit.

    Returns:
        dict: passed, correct_count, attempts_remaining, cooldown_until, status
    """
    _validate_answers(answers)
    with audited('claim.verify', 'claim', claim_id, actor.user_id) as intent:
        claim = _load_claim(claim_id)
        _ensure_claimant(claim, actor)
        # Cheap rejection before hashing; authoritative checks repeat in the transaction
        VerificationState.from_dict(claim.get('verification')).check_can_attempt(clock.utcnow())
        _ensure_pending(claim)

        # Answer hashes never change once a claim exists, so they are compared outside the transaction
        hashes = load_answer_hashes(claim['lost_report_id'])
        correct_count = sum(1 for given, stored in zip(answers, hashes) if verify_answer(given, stored))
        passed = correct_count >= config.VERIFICATION_PASS_THRESHOLD

        def _record(txn):
            current = read_claim(txn, claim_id)
            _ensure_claimant(current, actor)
            now = clock.utcnow()
            state = VerificationState.from_dict(current.get('verification'))
            state.check_can_attempt(now)
            _ensure_pending(current)
            lost, found = read_claim_reports(txn, current)
            lock = read_claim_lock(txn, current['lost_report_id'])
            trust = TrustUpdate(claim_id).read(txn, [current.get('claimant_id'), current.get('finder_id')])
            if passed and found.get('status') != FoundReportStatus.UNCLAIMED.value:
                raise InvalidStateError('The found item is already matched to another claim')

            if passed:
                new_state = state.record_success(now, correct_count)
                updates = claim_transition_fields(current, ClaimStatus.VERIFIED, now)
                write_lost_status(txn, lost, LostReportStatus.CLAIMED, now)
                write_found_status(txn, found, FoundReportStatus.MATCHED, now)
            else:
                new_state = state.record_failure(now, correct_count)
                updates = {'updated_at': now}
                if new_state.exhausted:
                    updates = claim_transition_fields(current, ClaimStatus.REJECTED, now)
                    release_claim_lock(txn, lock, claim_id)
                    mark_pair_rejected(txn, lost, current['found_report_id'], now)

            updates['verification'] = new_state.to_dict()
            updates['last_activity_at'] = now
            txn.update(CLAIMS, claim_id, updates)
            trust.write(txn, {**current, **updates})
            intent.commit(
                txn,
                before={'status': current['status'], 'failures': state.failures},
                after={'status': updates.get('status', current['status']), 'failures': new_state.failures},
                passed=passed,
            )
            return {
                'claim_id': claim_id,
                'passed': passed,
                'correct_count': correct_count,
                'attempts_remaining': new_state.attempts_remaining(),
                'cooldown_until': clock.isoformat_or_none(new_state.cooldown_until),
                'status': updates.get('status', current['status']),
            }

        result = get_store().run_transaction(_record)

    if passed:
        _logger.info("Claim %s verified (%d/%d correct)", claim_id, correct_count, len(answers))
    else:
        _logger.info("Claim %s failed verification, %d attempts remaining",
                     claim_id, result['attempts_remaining'])
    return result
