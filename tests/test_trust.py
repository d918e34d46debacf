"""Tests for trust score derivation, incremental updates and replay."""

import pytest

from handback.models import TRUST_SCORES, Actor, TrustLevel
from handback.services import claim_service, report_service, trust_service
from handback.services.trust_service import (
    derive_contributions,
    get_trust_score,
    recalculate_trust,
    trust_level,
)

from conftest import CORRECT_ANSWERS, WRONG_ANSWERS, found_payload, lost_payload

REASON = 'This phone is mine, I have the purchase receipt.'


def _claim(status, failures=0):
    return {
        'claim_id': 'C1',
        'claimant_id': 'U_OWNER',
        'finder_id': 'U_FINDER',
        'status': status,
        'verification': {'failures': failures},
    }


@pytest.mark.parametrize('score,level', [
    (-11, TrustLevel.SUSPENDED),
    (-10, TrustLevel.RESTRICTED),
    (-1, TrustLevel.RESTRICTED),
    (0, TrustLevel.NEW),
    (4, TrustLevel.NEW),
    (5, TrustLevel.ESTABLISHED),
    (14, TrustLevel.ESTABLISHED),
    (15, TrustLevel.TRUSTED),
])
def test_trust_level_thresholds(score, level):
    assert trust_level(score) == level


def test_returned_claim_rewards_both_parties():
    assert derive_contributions(_claim('RETURNED')) == {'U_FINDER': 3, 'U_OWNER': 2}


def test_open_and_cancelled_claims_contribute_nothing():
    for status in ('PENDING', 'VERIFIED', 'DISPUTED', 'CANCELLED', 'EXPIRED'):
        assert derive_contributions(_claim(status, failures=3)) == {}


def test_rejected_claim_penalised_only_when_exhausted():
    assert derive_contributions(_claim('REJECTED', failures=3)) == {'U_OWNER': -5}
    assert derive_contributions(_claim('REJECTED', failures=1)) == {}


def test_dispute_rulings():
    claim = _claim('REJECTED', failures=0)
    by_owner = {'status': 'RESOLVED_FINDER', 'opened_by': 'U_OWNER'}
    by_finder = {'status': 'RESOLVED_FINDER', 'opened_by': 'U_FINDER'}
    dismissed = {'status': 'DISMISSED', 'opened_by': 'U_FINDER'}

    assert derive_contributions(claim, by_owner) == {'U_OWNER': -8}
    assert derive_contributions(claim, by_finder) == {'U_OWNER': -5}
    assert derive_contributions(claim, dismissed) == {'U_FINDER': -3}
    assert derive_contributions(_claim('REJECTED', failures=3), dismissed) == {'U_OWNER': -5, 'U_FINDER': -3}


def test_unknown_user_starts_new():
    assert get_trust_score('U_NOBODY') == {'user_id': 'U_NOBODY', 'score': 0, 'level': 'NEW'}


def _exhaust(claim_id, owner, fake_clock):
    for hours in (1, 4, 24):
        claim_service.submit_answers(claim_id, owner, WRONG_ANSWERS)
        fake_clock.advance(hours=hours)


def test_owner_ruling_reverses_exhaustion_penalty(owner, finder, admin, claim, fake_clock, store):
    _exhaust(claim['claim_id'], owner, fake_clock)
    assert get_trust_score(owner.user_id)['score'] == -5

    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON)
    # A pending dispute suspends the penalty
    assert get_trust_score(owner.user_id)['score'] == 0

    result = claim_service.resolve_dispute(dispute['dispute_id'], admin, 'RESOLVED_OWNER')
    assert result['claim_status'] == 'RETURNED'
    assert get_trust_score(owner.user_id) == {'user_id': owner.user_id, 'score': 2, 'level': 'NEW'}
    assert get_trust_score(finder.user_id)['score'] == 3


def test_recalculation_matches_incremental_scores(owner, finder, admin, claim, fake_clock, store):
    _exhaust(claim['claim_id'], owner, fake_clock)
    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON)
    claim_service.resolve_dispute(dispute['dispute_id'], admin, 'RESOLVED_FINDER')
    incremental = get_trust_score(owner.user_id)['score']
    assert incremental == -8

    result = recalculate_trust(owner.user_id)
    assert result['score'] == incremental
    assert result['previous_score'] == incremental
    assert result['claims_replayed'] == 1


def test_recalculation_repairs_drift(owner, finder, verified_claim, store):
    otp = claim_service.generate_code(verified_claim['claim_id'], owner)['otp']
    claim_service.redeem_code(verified_claim['claim_id'], finder, otp)
    store.set(TRUST_SCORES, finder.user_id, {'user_id': finder.user_id, 'score': 40, 'level': 'TRUSTED'})

    result = recalculate_trust(finder.user_id)

    assert result['previous_score'] == 40
    assert result['score'] == 3
    assert store.get(TRUST_SCORES, finder.user_id)['level'] == 'NEW'


def test_verified_claim_earns_nothing_until_returned(owner, claim):
    claim_service.submit_answers(claim['claim_id'], owner, CORRECT_ANSWERS)
    assert get_trust_score(owner.user_id)['score'] == 0


def _return_item(claim_id, owner, finder):
    claim_service.submit_answers(claim_id, owner, CORRECT_ANSWERS)
    otp = claim_service.generate_code(claim_id, owner)['otp']
    claim_service.redeem_code(claim_id, finder, otp)


def _new_claim(owner, finder, title):
    lost = report_service.create_lost_report(owner, lost_payload(title=title))
    found = report_service.create_found_report(finder, found_payload(title=title))
    return claim_service.create_claim(owner, lost['lost_report_id'], found['found_report_id'])


def test_replay_matches_incremental_across_claims(owner, finder, admin, fake_clock):
    second_owner = Actor(user_id='U_OWNER_B')
    third_owner = Actor(user_id='U_OWNER_C')

    returned = _new_claim(owner, finder, 'Samsung phone in a blue case')
    _return_item(returned['claim_id'], owner, finder)

    dismissed = _new_claim(second_owner, finder, 'Samsung phone with APR sticker')
    _exhaust(dismissed['claim_id'], second_owner, fake_clock)
    dispute = claim_service.open_dispute(dismissed['claim_id'], finder, REASON)
    claim_service.resolve_dispute(dispute['dispute_id'], admin, 'DISMISSED')

    pending = _new_claim(third_owner, finder, 'Samsung phone with cracked corner')
    claim_service.submit_answers(pending['claim_id'], third_owner, WRONG_ANSWERS)
    fake_clock.advance(hours=1)

    overturned = _new_claim(owner, finder, 'Second Samsung phone, black')
    _exhaust(overturned['claim_id'], owner, fake_clock)
    dispute = claim_service.open_dispute(overturned['claim_id'], owner, REASON)
    claim_service.resolve_dispute(dispute['dispute_id'], admin, 'RESOLVED_OWNER')

    assert get_trust_score(finder.user_id)['score'] == 3
    for user in (owner, finder, second_owner, third_owner):
        incremental = get_trust_score(user.user_id)['score']
        result = recalculate_trust(user.user_id)
        assert result['score'] == incremental
        assert result['previous_score'] == incremental
    assert recalculate_trust(finder.user_id)['claims_replayed'] == 4


def test_replay_reads_outcomes_committed_after_lookup(owner, finder, verified_claim, monkeypatch):
    original_lookup = trust_service._participant_claim_ids

    def lookup_then_return_item(user_id):
        claim_ids = original_lookup(user_id)
        if get_trust_score(finder.user_id)['score'] == 0:
            otp = claim_service.generate_code(verified_claim['claim_id'], owner)['otp']
            claim_service.redeem_code(verified_claim['claim_id'], finder, otp)
        return claim_ids

    monkeypatch.setattr(trust_service, '_participant_claim_ids', lookup_then_return_item)
    result = recalculate_trust(finder.user_id)

    assert result['score'] == 3
    assert get_trust_score(finder.user_id)['score'] == 3


def test_replay_repeats_when_claims_appear(owner, finder, verified_claim, monkeypatch):
    original_lookup = trust_service._participant_claim_ids
    late_owner = Actor(user_id='U_OWNER_B')
    lookups = []

    def lookup_with_late_claim(user_id):
        claim_ids = original_lookup(user_id)
        lookups.append(len(claim_ids))
        if len(lookups) == 1:
            late = _new_claim(late_owner, finder, 'Samsung phone in a blue case')
            _return_item(late['claim_id'], late_owner, finder)
        return claim_ids

    monkeypatch.setattr(trust_service, '_participant_claim_ids', lookup_with_late_claim)
    result = recalculate_trust(finder.user_id)

    assert lookups[:2] == [1, 2]
    assert result['score'] == 3
    assert result['claims_replayed'] == 2
    assert get_trust_score(finder.user_id)['score'] == 3
