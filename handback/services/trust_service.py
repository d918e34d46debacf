"""
Trust Score Engine.

A user's score is the sum, over every claim they took part in, of the
contribution that claim's current outcome makes. Each claim's contribution is
a pure function of the claim and its dispute (if any), and the ledger entry
trust_ledger/{claim_id} remembers what was last applied, so outcomes that
change (a REJECTED claim later returned through a dispute) are applied as a
difference and re-applying the same outcome changes nothing.
"""
import logging
from typing import Dict, Optional

from .. import clock, config
from ..database import get_store
from ..models import (
    CLAIMS,
    DISPUTES,
    TRUST_LEDGER,
    TRUST_SCORES,
    ClaimStatus,
    DisputeStatus,
    TrustLevel,
)

_logger = logging.getLogger(__name__)

_MAX_REPLAY_PASSES = 3

# Upper bounds (exclusive) for each level, lowest first
_LEVEL_THRESHOLDS = (
    (-10, TrustLevel.SUSPENDED),
    (0, TrustLevel.RESTRICTED),
    (5, TrustLevel.NEW),
    (15, TrustLevel.ESTABLISHED),
)


def trust_level(score: int) -> TrustLevel:
    for bound, level in _LEVEL_THRESHOLDS:
        if score < bound:
            return level
    return TrustLevel.TRUSTED


def _exhausted(claim: dict) -> bool:
    failures = (claim.get('verification') or {}).get('failures', 0)
    return failures >= config.MAX_VERIFICATION_FAILURES


def derive_contributions(claim: dict, dispute: Optional[dict] = None) -> Dict[str, int]:
    """
    Contribution of one claim to each participant's score.

    Args:
        claim (dict): claim document
        dispute (dict): the claim's dispute document, if one was opened

    Returns:
        dict: user_id -> points (zero entries omitted)
    """
    claimant = claim.get('claimant_id')
    finder = claim.get('finder_id')
    status = claim.get('status')
    outcome = (dispute or {}).get('status')
    points: Dict[str, int] = {}

    def add(user_id, delta):
        if user_id and delta:
            points[user_id] = points.get(user_id, 0) + delta

    if status == ClaimStatus.RETURNED.value:
        add(finder, config.TRUST_RETURN_FINDER)
        add(claimant, config.TRUST_RETURN_OWNER)
    elif status == ClaimStatus.REJECTED.value:
        if outcome == DisputeStatus.RESOLVED_FINDER.value:
            # The ruling confirms the claim was not genuine
            add(claimant, config.TRUST_EXHAUSTED_VERIFICATION)
            if dispute.get('opened_by') == claimant:
                add(claimant, config.TRUST_UNFOUNDED_DISPUTE)
        elif outcome == DisputeStatus.DISMISSED.value:
            if _exhausted(claim):
                add(claimant, config.TRUST_EXHAUSTED_VERIFICATION)
            add(dispute.get('opened_by'), config.TRUST_UNFOUNDED_DISPUTE)
        elif _exhausted(claim):
            add(claimant, config.TRUST_EXHAUSTED_VERIFICATION)

    return {user_id: delta for user_id, delta in points.items() if delta}


class TrustUpdate:
    """
    Applies a claim's contribution inside a transaction.

    Call read() during the read phase with every participant that may be
    affected, then write() once the new claim/dispute state is known.
    """

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        self.previous: Dict[str, int] = {}
        self.scores: Dict[str, Optional[dict]] = {}

    def read(self, txn, user_ids):
        ledger = txn.get(TRUST_LEDGER, self.claim_id) or {}
        self.previous = dict(ledger.get('contributions') or {})
        for user_id in set(user_ids) | set(self.previous):
            if user_id and user_id not in self.scores:
                self.scores[user_id] = txn.get(TRUST_SCORES, user_id)
        return self

    def write(self, txn, claim: dict, dispute: Optional[dict] = None) -> Dict[str, int]:
        """Write score deltas for the claim's current outcome; returns the deltas applied."""
        current = derive_contributions(claim, dispute)
        now = clock.utcnow()
        deltas = {}
        for user_id in set(current) | set(self.previous):
            delta = current.get(user_id, 0) - self.previous.get(user_id, 0)
            if not delta:
                continue
            if user_id not in self.scores:
                raise RuntimeError(f'Trust score for {user_id} was not read before writing')
            existing = self.scores[user_id] or {}
            score = int(existing.get('score', 0)) + delta
            txn.set(TRUST_SCORES, user_id, {
                'user_id': user_id,
                'score': score,
                'level': trust_level(score).value,
                'updated_at': now,
            })
            deltas[user_id] = delta
        if deltas or current != self.previous:
            txn.set(TRUST_LEDGER, self.claim_id, {
                'claim_id': self.claim_id,
                'contributions': current,
                'updated_at': now,
            })
        if deltas:
            _logger.info("Trust updated for claim %s: %s", self.claim_id, deltas)
        return deltas


def _score_payload(user_id, score):
    return {'user_id': user_id, 'score': score, 'level': trust_level(score).value}


def get_trust_score(user_id):
    doc = get_store().get(TRUST_SCORES, user_id) or {}
    return _score_payload(user_id, int(doc.get('score', 0)))


def _participant_claim_ids(user_id):
    store = get_store()
    claim_ids = {c['claim_id'] for c in store.query(CLAIMS, [('claimant_id', '==', user_id)])}
    claim_ids.update(c['claim_id'] for c in store.query(CLAIMS, [('finder_id', '==', user_id)]))
    return claim_ids


def recalculate_trust(user_id):
    """
    Replay every claim the user took part in and overwrite the stored score.
    Per-claim ledger entries are left as they are.

    Claims and disputes are re-read inside the transaction that writes the
    score. If a claim involving the user appears while the replay runs, the
    replay is repeated so its outcome is not lost.
    """
    store = get_store()
    claim_ids = _participant_claim_ids(user_id)

    def _overwrite(txn):
        existing = txn.get(TRUST_SCORES, user_id) or {}
        total = 0
        for claim_id in sorted(claim_ids):
            claim = txn.get(CLAIMS, claim_id)
            if not claim:
                continue
            dispute = txn.get(DISPUTES, claim['dispute_id']) if claim.get('dispute_id') else None
            total += derive_contributions(claim, dispute).get(user_id, 0)
        txn.set(TRUST_SCORES, user_id, {
            'user_id': user_id,
            'score': total,
            'level': trust_level(total).value,
            'updated_at': clock.utcnow(),
            'recalculated_at': clock.utcnow(),
        })
        return int(existing.get('score', 0)), total

    for attempt in range(1, _MAX_REPLAY_PASSES + 1):
        previous, total = store.run_transaction(_overwrite)
        latest_ids = _participant_claim_ids(user_id)
        if latest_ids <= claim_ids:
            break
        _logger.info("New claims for %s appeared during replay pass %d, replaying again", user_id, attempt)
        claim_ids = latest_ids
    else:
        _logger.warning("Trust replay for %s did not settle after %d passes", user_id, _MAX_REPLAY_PASSES)

    if previous != total:
        _logger.warning("Trust score drift for %s: stored %d, replayed %d", user_id, previous, total)
    else:
        _logger.info("Trust score for %s recalculated: %d", user_id, total)
    payload = _score_payload(user_id, total)
    payload['previous_score'] = previous
    payload['claims_replayed'] = len(claim_ids)
    return payload
