"""Tests for the background sweep scheduler."""

import pytest

from handback.models import CLAIMS
from handback.services.scheduler_service import (
    CLAIM_EXPIRY_JOB_ID,
    REPORT_EXPIRY_JOB_ID,
    HandbackScheduler,
)


@pytest.fixture
def scheduler():
    sched = HandbackScheduler()
    yield sched
    sched.shutdown()


def test_start_registers_both_sweeps(scheduler):
    scheduler.start()

    assert scheduler.is_running
    claims_job = scheduler.get_job_status(CLAIM_EXPIRY_JOB_ID)
    reports_job = scheduler.get_job_status(REPORT_EXPIRY_JOB_ID)
    assert claims_job['name'] == 'Expire stale pending claims'
    assert claims_job['next_run'] is not None
    assert 'hour=' in reports_job['trigger']
    assert scheduler.get_job_status('missing') is None

    # Starting twice is a no-op
    scheduler.start()
    assert len(scheduler.get_jobs()) == 2


def test_claim_job_runs_sweep(scheduler, claim, fake_clock, store):
    fake_clock.advance(days=8)
    scheduler._expire_claims_job()
    assert store.get(CLAIMS, claim['claim_id'])['status'] == 'EXPIRED'


def test_job_failure_is_contained(scheduler, monkeypatch):
    from handback.services import scheduler_service

    def boom(*args, **kwargs):
        raise RuntimeError('store down')

    monkeypatch.setattr(scheduler_service, 'expire_inactive_reports', boom)
    scheduler._expire_reports_job()


def test_status_reports_running_global_scheduler(scheduler, monkeypatch):
    from handback.services import scheduler_service

    monkeypatch.setattr(scheduler_service, '_scheduler', scheduler)
    assert scheduler_service.get_scheduler_status()['running'] is False

    scheduler.start()
    status = scheduler_service.get_scheduler_status()
    assert status['running'] is True
    assert {job['id'] for job in status['jobs']} == {CLAIM_EXPIRY_JOB_ID, REPORT_EXPIRY_JOB_ID}
