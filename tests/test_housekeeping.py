"""Tests for lease expiry and history retention sweeps."""
from datetime import timedelta

from sqlmodel import Session

from marketing_gateway.housekeeping import expire_stuck_jobs, purge_inactive_jobs, run_housekeeping
from marketing_gateway.models import Job, JobKind, JobStatus, utcnow

from conftest import USER


def _age(store, job_id, days):
    with Session(store.engine) as s:
        job = s.get(Job, job_id)
        job.last_activity = utcnow() - timedelta(days=days)
        s.add(job)
        s.commit()


def test_stuck_job_is_released_and_can_be_resubmitted(store, caplog):
    job = store.create(USER, JobKind.adcopy, {})
    store.set_processing(job.id, USER, lease_seconds=-1)

    assert expire_stuck_jobs(store) == 1
    assert "stuck in processing" in caplog.text
    assert store.get(job.id).status == JobStatus.error

    # the gate opens again
    store.set_processing(job.id, USER, lease_seconds=60)
    assert store.get(job.id).status == JobStatus.processing


def test_purge_respects_retention(store):
    old = store.create(USER, JobKind.workflow, {})
    recent = store.create(USER, JobKind.workflow, {})
    _age(store, old.id, 45)
    _age(store, recent.id, 3)

    assert purge_inactive_jobs(store, retention_days=30) == 1
    assert [j.id for j in store.list_for_owner(USER)] == [recent.id]


def test_run_housekeeping_reports_counts(store, settings):
    stuck = store.create(USER, JobKind.workflow, {})
    store.set_processing(stuck.id, USER, lease_seconds=-1)
    old = store.create(USER, JobKind.workflow, {})
    _age(store, old.id, settings.RETENTION_DAYS + 1)

    assert run_housekeeping(store, settings) == {"expired": 1, "purged": 1}
    assert store.get(stuck.id).status == JobStatus.error
