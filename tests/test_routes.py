"""API-level tests: session auth, JSON error bodies and status codes."""

from handback.services import scheduler_service

from conftest import CORRECT_ANSWERS, WRONG_ANSWERS, found_payload, login, lost_payload


def _start_claim(client, owner, finder):
    login(client, finder)
    found = client.post('/api/found-reports', json=found_payload()).get_json()['found_report']
    login(client, owner)
    lost = client.post('/api/lost-reports', json=lost_payload()).get_json()['lost_report']
    resp = client.post('/api/claims', json={
        'lost_report_id': lost['lost_report_id'],
        'found_report_id': found['found_report_id'],
    })
    assert resp.status_code == 201
    return resp.get_json()['claim']


def test_health(client):
    resp = client.get('/api/health')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'


def test_requires_session(client):
    resp = client.get('/api/claims')
    assert resp.status_code == 401
    assert resp.get_json()['code'] == 'UNAUTHORIZED'


def test_admin_routes_require_admin(client, owner, admin):
    login(client, owner)
    resp = client.post('/admin/api/sweeps/expire-claims')
    assert resp.status_code == 403

    login(client, admin)
    resp = client.post('/admin/api/sweeps/expire-claims')
    assert resp.status_code == 200
    assert resp.get_json()['expired'] == 0


def test_validation_error_body(client, owner):
    login(client, owner)
    resp = client.post('/api/lost-reports', json=lost_payload(secret_questions=[]))

    assert resp.status_code == 400
    body = resp.get_json()
    assert body['code'] == 'VALIDATION_FAILED'
    assert body['field'] == 'secret_questions'


def test_unknown_route_is_json(client):
    resp = client.get('/api/nothing-here')
    assert resp.status_code == 404
    assert resp.get_json()['code'] == 'NOT_FOUND'


def test_lost_report_response_never_has_answers(client, owner):
    login(client, owner)
    resp = client.post('/api/lost-reports', json=lost_payload())

    assert resp.status_code == 201
    assert 'Dark Blue' not in resp.get_data(as_text=True)


def test_verify_flow_and_rate_limit(client, owner, finder):
    claim = _start_claim(client, owner, finder)
    url = f"/api/claims/{claim['claim_id']}"

    questions = client.get(f'{url}/questions').get_json()
    assert len(questions['questions']) == 3

    failed = client.post(f'{url}/verify', json={'answers': WRONG_ANSWERS})
    assert failed.status_code == 200
    assert failed.get_json()['passed'] is False

    limited = client.post(f'{url}/verify', json={'answers': CORRECT_ANSWERS})
    assert limited.status_code == 429
    body = limited.get_json()
    assert body['code'] == 'RATE_LIMITED'
    assert body['retry_after'] > 0


def test_handover_over_http(client, owner, finder):
    claim = _start_claim(client, owner, finder)
    url = f"/api/claims/{claim['claim_id']}"
    assert client.post(f'{url}/verify', json={'answers': CORRECT_ANSWERS}).get_json()['status'] == 'VERIFIED'

    otp_resp = client.post(f'{url}/handover/otp')
    assert otp_resp.status_code == 201
    otp = otp_resp.get_json()['otp']

    # The owner cannot confirm their own handover
    assert client.post(f'{url}/handover/verify', json={'otp': otp}).status_code == 403

    login(client, finder)
    wrong = client.post(f'{url}/handover/verify', json={'otp': f'{(int(otp) + 1) % 10 ** 6:06d}'})
    assert wrong.status_code == 400
    assert wrong.get_json() == {'error': 'Incorrect handover code', 'code': 'INVALID_CODE', 'attempts_remaining': 2}

    done = client.post(f'{url}/handover/verify', json={'otp': otp})
    assert done.status_code == 200
    assert done.get_json()['status'] == 'RETURNED'

    again = client.post(f'{url}/handover/verify', json={'otp': otp})
    assert again.status_code == 409
    assert again.get_json()['code'] == 'ALREADY_REDEEMED'
    assert client.get('/api/me/trust').get_json()['score'] == 3


def test_dispute_over_http(client, owner, finder, admin, fake_clock):
    claim = _start_claim(client, owner, finder)
    fake_clock.advance(minutes=1)
    resp = client.post(f"/api/claims/{claim['claim_id']}/dispute", json={
        'reason': 'I need an admin to look at this claim please.',
        'evidence': ['receipt.pdf'],
    })
    assert resp.status_code == 201
    dispute_id = resp.get_json()['dispute']['dispute_id']

    login(client, admin)
    assert client.post(f'/admin/api/disputes/{dispute_id}/review', json={}).get_json()['dispute']['status'] == 'UNDER_REVIEW'
    resolved = client.post(f'/admin/api/disputes/{dispute_id}/resolve', json={'outcome': 'DISMISSED'})
    assert resolved.status_code == 200
    assert resolved.get_json()['claim_status'] == 'REJECTED'

    trail = client.get(f"/admin/api/audit/claim/{claim['claim_id']}").get_json()['entries']
    assert [e['action'] for e in trail if e['phase'] == 'COMMITTED'] == ['claim.create', 'claim.dispute.open']
    assert isinstance(trail[0]['timestamp'], str)


def test_matches_endpoint(client, owner, finder):
    login(client, finder)
    client.post('/api/found-reports', json=found_payload())
    login(client, owner)
    lost = client.post('/api/lost-reports', json=lost_payload()).get_json()['lost_report']

    resp = client.get(f"/api/lost-reports/{lost['lost_report_id']}/matches")
    assert resp.status_code == 200
    matches = resp.get_json()['matches']
    assert len(matches) == 1
    assert matches[0]['score'] >= 5


def test_scheduler_status_does_not_create_scheduler(client, admin, monkeypatch):
    monkeypatch.setattr(scheduler_service, '_scheduler', None)
    login(client, admin)

    resp = client.get('/admin/api/scheduler/status')
    assert resp.status_code == 200
    assert resp.get_json() == {'success': True, 'running': False, 'jobs': []}
    assert scheduler_service._scheduler is None


def test_dispute_queue_over_http(client, owner, finder, admin):
    claim = _start_claim(client, owner, finder)
    dispute_id = client.post(f"/api/claims/{claim['claim_id']}/dispute", json={
        'reason': 'I need an admin to look at this claim please.',
    }).get_json()['dispute']['dispute_id']

    assert client.get('/admin/api/disputes').status_code == 403

    login(client, admin)
    resp = client.get('/admin/api/disputes?status=OPEN')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['count'] == 1
    assert body['disputes'][0]['dispute_id'] == dispute_id
    assert client.get('/admin/api/disputes?status=RESOLVED_OWNER').get_json()['count'] == 0
    assert client.get('/admin/api/disputes?limit=abc').status_code == 400
