"""Shared fixtures: in-memory store, fixed clock, seeded reports and actors."""

from datetime import datetime, timedelta, timezone

import pytest

from handback import clock, config
from handback.database import set_store
from handback.memory_store import MemoryStore
from handback.models import Actor, Role
from handback.services import claim_service, report_service

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

QUESTIONS = [
    {'question': 'What colour is the case?', 'answer': 'Dark Blue'},
    {'question': 'What is the lock screen photo?', 'answer': 'A sunset over Kivu'},
    {'question': 'What sticker is on the back?', 'answer': 'APR FC'},
]
CORRECT_ANSWERS = ['dark blue', '  a SUNSET over   kivu ', 'apr fc']
WRONG_ANSWERS = ['red', 'a cat', 'none']


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def store():
    memory = MemoryStore()
    set_store(memory)
    yield memory
    set_store(None)


@pytest.fixture(autouse=True)
def fake_clock():
    fake = FakeClock(T0)
    clock.set_clock(fake)
    yield fake
    clock.set_clock(None)


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    # Keep scrypt cheap in tests
    monkeypatch.setattr(config, 'SCRYPT_N', 2 ** 4)
    monkeypatch.setattr(config, 'HASH_PEPPER', 'test-pepper')


@pytest.fixture
def owner():
    return Actor(user_id='U_OWNER')


@pytest.fixture
def finder():
    return Actor(user_id='U_FINDER')


@pytest.fixture
def staff():
    return Actor(user_id='U_STAFF', role=Role.COOP_STAFF, cooperative_id='COOP_NYABUGOGO')


@pytest.fixture
def admin():
    return Actor(user_id='U_ADMIN', role=Role.ADMIN)


@pytest.fixture
def stranger():
    return Actor(user_id='U_STRANGER')


def lost_payload(**overrides):
    data = {
        'category': 'PHONE',
        'title': 'Black Samsung Galaxy phone',
        'description': 'Samsung with a cracked corner, lost on the bus',
        'location_area': 'Nyabugogo',
        'lost_at': (T0 - timedelta(hours=2)).isoformat(),
        'secret_questions': QUESTIONS,
    }
    data.update(overrides)
    return data


def found_payload(**overrides):
    data = {
        'category': 'PHONE',
        'title': 'Samsung phone',
        'description': 'Black phone with cracked corner left on a seat',
        'location_area': 'Nyabugogo',
        'found_at': T0.isoformat(),
    }
    data.update(overrides)
    return data


@pytest.fixture
def lost_report(owner):
    return report_service.create_lost_report(owner, lost_payload())


@pytest.fixture
def found_report(finder):
    return report_service.create_found_report(finder, found_payload())


@pytest.fixture
def claim(owner, lost_report, found_report):
    return claim_service.create_claim(owner, lost_report['lost_report_id'], found_report['found_report_id'])


@pytest.fixture
def verified_claim(owner, claim):
    result = claim_service.submit_answers(claim['claim_id'], owner, CORRECT_ANSWERS)
    assert result['passed']
    return claim_service.get_claim(claim['claim_id'], owner)


@pytest.fixture
def app():
    from app import create_app
    return create_app({'TESTING': True, 'SECRET_KEY': 'test'})


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, actor):
    with client.session_transaction() as sess:
        sess['user_id'] = actor.user_id
        sess['role'] = actor.role.value
        if actor.cooperative_id:
            sess['cooperative_id'] = actor.cooperative_id
