"""Tests for the job record store: create, compare-and-set, settle, sweeps."""
from datetime import timedelta

import pytest

from marketing_gateway.errors import JobNotFound, RejectedConcurrent
from marketing_gateway.models import JobKind, JobStatus, utcnow

from conftest import OTHER_USER, USER


def _new(store, **kw):
    return store.create(USER, kw.pop("kind", JobKind.workflow), kw.pop("payload", {"q": "x"}), **kw)


def test_create_starts_idle(store):
    job = _new(store, title="Spring launch")
    assert job.status == JobStatus.idle
    assert job.result is None and job.error is None

    fetched = store.get(job.id)
    assert fetched.owner == USER
    assert fetched.payload == {"q": "x"}
    assert fetched.title == "Spring launch"


def test_get_missing_raises(store):
    with pytest.raises(JobNotFound):
        store.get("nope")


def test_get_owned_hides_other_users_jobs(store):
    job = _new(store)
    with pytest.raises(JobNotFound):
        store.get_owned(job.id, OTHER_USER)


def test_set_processing_is_compare_and_set(store):
    job = _new(store)
    attempt = store.set_processing(job.id, USER, lease_seconds=60)
    assert attempt

    with pytest.raises(RejectedConcurrent):
        store.set_processing(job.id, USER, lease_seconds=60)

    fetched = store.get(job.id)
    assert fetched.status == JobStatus.processing
    assert fetched.attempt == attempt
    assert fetched.lease_expires_at is not None


def test_set_processing_wrong_owner_is_not_found(store):
    job = _new(store)
    with pytest.raises(JobNotFound):
        store.set_processing(job.id, OTHER_USER, lease_seconds=60)
    assert store.get(job.id).status == JobStatus.idle


def test_resubmit_clears_previous_result(store):
    job = _new(store)
    attempt = store.set_processing(job.id, USER, lease_seconds=60)
    store.complete(job.id, {"a": 1}, attempt=attempt, run_id="r1")
    done = store.get(job.id)
    assert done.status == JobStatus.completed
    assert done.result == {"a": 1}
    assert done.run_id == "r1"

    store.set_processing(job.id, USER, lease_seconds=60, payload={"q": "y"})
    again = store.get(job.id)
    assert again.status == JobStatus.processing
    assert again.result is None
    assert again.error is None
    assert again.run_id is None
    assert again.payload == {"q": "y"}


def test_fail_then_complete_keeps_result_and_error_exclusive(store):
    job = _new(store)
    attempt = store.set_processing(job.id, USER, lease_seconds=60)
    store.fail(job.id, "boom", attempt=attempt)
    failed = store.get(job.id)
    assert failed.status == JobStatus.error
    assert failed.error == "boom"
    assert failed.result is None

    attempt = store.set_processing(job.id, USER, lease_seconds=60)
    store.complete(job.id, {"x": "ok"}, attempt=attempt)
    done = store.get(job.id)
    assert done.error is None
    assert done.result == {"x": "ok"}


def test_stale_attempt_is_discarded(store):
    job = _new(store)
    first = store.set_processing(job.id, USER, lease_seconds=-1)  # lease already over
    second = store.set_processing(job.id, USER, lease_seconds=60)
    assert first != second

    assert store.complete(job.id, {"late": True}, attempt=first) is False
    assert store.get(job.id).status == JobStatus.processing

    assert store.complete(job.id, {"fresh": True}, attempt=second) is True
    assert store.get(job.id).result == {"fresh": True}


def test_settle_missing_job_raises(store):
    with pytest.raises(JobNotFound):
        store.complete("missing", {"a": 1})
    with pytest.raises(JobNotFound):
        store.fail("missing", "x")


def test_delete_checks_owner(store):
    job = _new(store)
    with pytest.raises(JobNotFound):
        store.delete(job.id, OTHER_USER)
    store.delete(job.id, USER)
    with pytest.raises(JobNotFound):
        store.get(job.id)


def test_list_for_owner_filters_kind_and_owner(store):
    _new(store, kind=JobKind.adcopy)
    _new(store, kind=JobKind.audience)
    store.create(OTHER_USER, JobKind.adcopy, {})

    assert len(store.list_for_owner(USER)) == 2
    adcopies = store.list_for_owner(USER, kind=JobKind.adcopy)
    assert [j.kind for j in adcopies] == [JobKind.adcopy]


def test_expire_leases_only_touches_expired_processing_jobs(store):
    stuck = _new(store)
    store.set_processing(stuck.id, USER, lease_seconds=-1)
    busy = _new(store)
    store.set_processing(busy.id, USER, lease_seconds=600)
    idle = _new(store)

    assert store.expire_leases() == 1
    assert store.get(stuck.id).status == JobStatus.error
    assert "interrupted" in store.get(stuck.id).error
    assert store.get(busy.id).status == JobStatus.processing
    assert store.get(idle.id).status == JobStatus.idle


def test_purge_inactive_keeps_processing_jobs(store):
    old = _new(store)
    busy = _new(store)
    store.set_processing(busy.id, USER, lease_seconds=600)

    removed = store.purge_inactive(utcnow() + timedelta(days=1))
    assert removed == 1
    with pytest.raises(JobNotFound):
        store.get(old.id)
    assert store.get(busy.id).status == JobStatus.processing


def test_create_processing_inserts_held_job(store):
    job, attempt = store.create_processing(USER, JobKind.conversation, {"message": "Hi"}, lease_seconds=60,
                                           messages=[{"role": "user", "content": "Hi"}])
    fetched = store.get(job.id)
    assert fetched.status == JobStatus.processing
    assert fetched.attempt == attempt
    assert fetched.messages == [{"role": "user", "content": "Hi"}]

    with pytest.raises(RejectedConcurrent):
        store.set_processing(job.id, USER, lease_seconds=60)


def test_messages_are_appended_across_turns(store):
    job, attempt = store.create_processing(USER, JobKind.conversation, {}, lease_seconds=60,
                                           messages=[{"role": "user", "content": "one"}])
    store.complete(job.id, {"output": "1"}, attempt=attempt, messages=[{"role": "assistant", "content": "1"}])
    attempt = store.set_processing(job.id, USER, lease_seconds=60, messages=[{"role": "user", "content": "two"}])
    store.fail(job.id, "boom", attempt=attempt, messages=[{"role": "assistant", "content": "sorry"}])

    contents = [m["content"] for m in store.get(job.id).messages]
    assert contents == ["one", "1", "two", "sorry"]


def test_stale_settlement_does_not_append_messages(store):
    job, first = store.create_processing(USER, JobKind.conversation, {}, lease_seconds=-1)
    store.set_processing(job.id, USER, lease_seconds=60)
    assert store.complete(job.id, {"output": "late"}, attempt=first,
                          messages=[{"role": "assistant", "content": "late"}]) is False
    assert store.get(job.id).messages == []


def test_edit_updates_owned_settled_job(store):
    job = _new(store, title="Draft")
    attempt = store.set_processing(job.id, USER, lease_seconds=60)
    store.complete(job.id, {"headline": "Old"}, attempt=attempt)

    edited = store.edit(job.id, USER, title="Final", result={"headline": "New"})
    assert edited.title == "Final"
    assert edited.result == {"headline": "New"}
    assert edited.status == JobStatus.completed


def test_edit_refused_while_processing_or_for_other_owner(store):
    job = _new(store)
    with pytest.raises(JobNotFound):
        store.edit(job.id, OTHER_USER, title="mine now")
    store.set_processing(job.id, USER, lease_seconds=60)
    with pytest.raises(RejectedConcurrent):
        store.edit(job.id, USER, title="too soon")
    assert store.get(job.id).title is None


def test_timestamps_are_stored_in_utc(store):
    job = _new(store)
    fetched = store.get(job.id)
    assert abs((fetched.last_activity.replace(tzinfo=None) - utcnow().replace(tzinfo=None)).total_seconds()) < 60
