"""Tests for opening, reviewing and resolving disputes."""

import pytest

from handback.errors import ConflictError, ForbiddenError, InvalidStateError, ValidationError
from handback.models import CLAIM_LOCKS, CLAIMS, FOUND_REPORTS, LOST_REPORTS
from handback.services import claim_service, report_service
from handback.services.audit_service import list_audit_entries

from conftest import WRONG_ANSWERS, found_payload, lost_payload

REASON = 'The finder is holding on to my phone and will not hand it over.'


def test_reason_must_be_substantial(owner, claim):
    for reason in (None, '', '   too short   ', 'x' * 19):
        with pytest.raises(ValidationError):
            claim_service.open_dispute(claim['claim_id'], owner, reason)


def test_evidence_is_validated(owner, claim):
    with pytest.raises(ValidationError):
        claim_service.open_dispute(claim['claim_id'], owner, REASON, evidence='photo.jpg')
    with pytest.raises(ValidationError):
        claim_service.open_dispute(claim['claim_id'], owner, REASON, evidence=[f'e{i}' for i in range(11)])


def test_only_parties_can_dispute(stranger, claim):
    with pytest.raises(ForbiddenError):
        claim_service.open_dispute(claim['claim_id'], stranger, REASON)


def test_open_dispute_freezes_claim(owner, finder, verified_claim, store):
    dispute = claim_service.open_dispute(verified_claim['claim_id'], finder, REASON, evidence=['chat.png'])

    assert dispute['status'] == 'OPEN'
    assert dispute['opened_by'] == finder.user_id
    assert dispute['claim_status_at_open'] == 'VERIFIED'
    assert dispute['reason'] == REASON
    stored = store.get(CLAIMS, verified_claim['claim_id'])
    assert stored['status'] == 'DISPUTED'
    assert stored['dispute_id'] == dispute['dispute_id']

    with pytest.raises(ConflictError):
        claim_service.open_dispute(verified_claim['claim_id'], owner, REASON)
    # No handover while disputed
    with pytest.raises(InvalidStateError):
        claim_service.generate_code(verified_claim['claim_id'], owner)


def test_closed_claims_cannot_be_disputed(owner, claim):
    claim_service.cancel_claim(claim['claim_id'], owner)
    with pytest.raises(InvalidStateError):
        claim_service.open_dispute(claim['claim_id'], owner, REASON)


def test_dispute_visibility(owner, finder, admin, stranger, claim):
    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON)

    assert claim_service.get_dispute(dispute['dispute_id'], finder)['dispute_id'] == dispute['dispute_id']
    assert claim_service.get_dispute(dispute['dispute_id'], admin)['status'] == 'OPEN'
    with pytest.raises(ForbiddenError):
        claim_service.get_dispute(dispute['dispute_id'], stranger)


def test_evidence_can_be_added_up_to_limit(owner, finder, claim):
    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON, evidence=['receipt.pdf'])

    updated = claim_service.add_evidence(dispute['dispute_id'], finder, [f'photo{i}.jpg' for i in range(9)])
    assert len(updated['evidence']) == 10
    with pytest.raises(ValidationError):
        claim_service.add_evidence(dispute['dispute_id'], owner, ['one-too-many.jpg'])


def test_review_and_resolve_are_admin_only(owner, admin, claim):
    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON)

    with pytest.raises(ForbiddenError):
        claim_service.mark_under_review(dispute['dispute_id'], owner)
    with pytest.raises(ForbiddenError):
        claim_service.resolve_dispute(dispute['dispute_id'], owner, 'RESOLVED_OWNER')

    reviewed = claim_service.mark_under_review(dispute['dispute_id'], admin, notes='Calling both parties')
    assert reviewed['status'] == 'UNDER_REVIEW'
    assert reviewed['reviewed_by'] == admin.user_id
    with pytest.raises(InvalidStateError):
        claim_service.mark_under_review(dispute['dispute_id'], admin)


def test_invalid_outcome(owner, admin, claim):
    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON)
    with pytest.raises(ValidationError):
        claim_service.resolve_dispute(dispute['dispute_id'], admin, 'OPEN')


def test_resolve_for_owner_returns_item(owner, finder, admin, verified_claim, store):
    dispute = claim_service.open_dispute(verified_claim['claim_id'], owner, REASON)

    result = claim_service.resolve_dispute(dispute['dispute_id'], admin, 'resolved_owner', notes='Receipt checks out')

    assert result['claim_status'] == 'RETURNED'
    assert result['dispute']['status'] == 'RESOLVED_OWNER'
    assert result['dispute']['resolution_notes'] == 'Receipt checks out'
    stored = store.get(CLAIMS, verified_claim['claim_id'])
    assert stored['handover']['attested_by'] == admin.user_id
    assert store.get(LOST_REPORTS, verified_claim['lost_report_id'])['status'] == 'RETURNED'
    assert store.get(FOUND_REPORTS, verified_claim['found_report_id'])['status'] == 'RETURNED'
    assert store.get(CLAIM_LOCKS, verified_claim['lost_report_id']) is None

    with pytest.raises(InvalidStateError):
        claim_service.resolve_dispute(dispute['dispute_id'], admin, 'DISMISSED')
    with pytest.raises(InvalidStateError):
        claim_service.add_evidence(dispute['dispute_id'], owner, ['late.jpg'])


@pytest.mark.parametrize('outcome', ['RESOLVED_FINDER', 'DISMISSED'])
def test_resolve_against_claimant_rejects_and_releases(outcome, owner, finder, admin, verified_claim, store):
    dispute = claim_service.open_dispute(verified_claim['claim_id'], finder, REASON)

    result = claim_service.resolve_dispute(dispute['dispute_id'], admin, outcome)

    assert result['claim_status'] == 'REJECTED'
    lost = store.get(LOST_REPORTS, verified_claim['lost_report_id'])
    assert lost['status'] == 'ACTIVE'
    assert verified_claim['found_report_id'] in lost['rejected_found_report_ids']
    assert store.get(FOUND_REPORTS, verified_claim['found_report_id'])['status'] == 'UNCLAIMED'
    assert store.get(CLAIM_LOCKS, verified_claim['lost_report_id']) is None
    # The rejected pair cannot be claimed again
    with pytest.raises(ConflictError):
        claim_service.create_claim(owner, verified_claim['lost_report_id'], verified_claim['found_report_id'])


def test_rejected_claim_can_be_disputed_once(owner, admin, claim, fake_clock, store):
    for hours in (1, 4, 24):
        claim_service.submit_answers(claim['claim_id'], owner, WRONG_ANSWERS)
        fake_clock.advance(hours=hours)
    assert store.get(CLAIM_LOCKS, claim['lost_report_id']) is None

    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON)
    assert dispute['claim_status_at_open'] == 'REJECTED'
    assert store.get(CLAIM_LOCKS, claim['lost_report_id'])['claim_id'] == claim['claim_id']

    claim_service.resolve_dispute(dispute['dispute_id'], admin, 'DISMISSED')
    with pytest.raises(InvalidStateError):
        claim_service.open_dispute(claim['claim_id'], owner, REASON)


def test_rejected_claim_dispute_blocked_by_newer_claim(owner, finder, claim, fake_clock):
    for hours in (1, 4, 24):
        claim_service.submit_answers(claim['claim_id'], owner, WRONG_ANSWERS)
        fake_clock.advance(hours=hours)
    other = report_service.create_found_report(finder, found_payload(title='Samsung phone, blue case'))
    claim_service.create_claim(owner, claim['lost_report_id'], other['found_report_id'])

    with pytest.raises(ConflictError):
        claim_service.open_dispute(claim['claim_id'], owner, REASON)


def test_dispute_actions_are_audited(owner, admin, claim):
    dispute = claim_service.open_dispute(claim['claim_id'], owner, REASON)
    claim_service.resolve_dispute(dispute['dispute_id'], admin, 'DISMISSED', notes='No merit')

    claim_actions = [e['action'] for e in list_audit_entries('claim', claim['claim_id'])]
    dispute_entries = list_audit_entries('dispute', dispute['dispute_id'])
    assert 'claim.dispute.open' in claim_actions
    assert [(e['action'], e['phase']) for e in dispute_entries] == [('dispute.resolve', 'COMMITTED')]
    assert dispute_entries[0]['reason'] == 'No merit'


def test_review_queue_lists_newest_first(owner, finder, admin, claim, fake_clock):
    first = claim_service.open_dispute(claim['claim_id'], owner, REASON)
    claim_service.mark_under_review(first['dispute_id'], admin)

    fake_clock.advance(hours=2)
    lost = report_service.create_lost_report(owner, lost_payload(title='Black Samsung phone, second one'))
    found = report_service.create_found_report(finder, found_payload(title='Samsung phone, blue case'))
    other = claim_service.create_claim(owner, lost['lost_report_id'], found['found_report_id'])
    second = claim_service.open_dispute(other['claim_id'], finder, REASON)

    queue = claim_service.list_disputes(admin)
    assert [d['dispute_id'] for d in queue['disputes']] == [second['dispute_id'], first['dispute_id']]
    assert queue['total'] == 2
    assert isinstance(queue['disputes'][0]['created_at'], str)

    open_only = claim_service.list_disputes(admin, status='open')
    assert [d['dispute_id'] for d in open_only['disputes']] == [second['dispute_id']]
    reviewing = claim_service.list_disputes(admin, status='UNDER_REVIEW')
    assert [d['dispute_id'] for d in reviewing['disputes']] == [first['dispute_id']]

    page = claim_service.list_disputes(admin, limit=1)
    assert len(page['disputes']) == 1
    assert page['total'] == 2


def test_review_queue_is_admin_only(owner, admin):
    with pytest.raises(ForbiddenError):
        claim_service.list_disputes(owner)
    with pytest.raises(ValidationError):
        claim_service.list_disputes(admin, status='LOST')
    with pytest.raises(ValidationError):
        claim_service.list_disputes(admin, limit=0)
