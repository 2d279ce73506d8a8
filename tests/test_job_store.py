"""Tests for the job queue storage backends (in-memory and SQLite)."""

import asyncio
from datetime import timedelta

import pytest

from pyconveyor.models import Job, JobOptions, JobState, utcnow
from pyconveyor.storage import SqliteJobStore, StorageError, WorkNotificationSource


def make_job(job_id: str, priority: int = 0, **data) -> Job:
    return Job(id=job_id, type="test", data=data, options=JobOptions(priority=priority))


@pytest.mark.asyncio
async def test_add_and_get(any_job_store):
    await any_job_store.add_job(make_job("j1", documentId="d1"))

    job = await any_job_store.get_job("j1")
    assert job is not None
    assert job.state == JobState.WAITING
    assert job.data == {"documentId": "d1"}
    assert await any_job_store.get_job("missing") is None


@pytest.mark.asyncio
async def test_claim_is_fifo(any_job_store):
    for job_id in ("a", "b", "c"):
        await any_job_store.add_job(make_job(job_id))

    claimed = [(await any_job_store.claim_next("w1")).id for _ in range(3)]
    assert claimed == ["a", "b", "c"]
    assert await any_job_store.claim_next("w1") is None


@pytest.mark.asyncio
async def test_claim_respects_priority(any_job_store):
    """Lower priority values are claimed first; ties stay FIFO."""
    await any_job_store.add_job(make_job("low-1", priority=5))
    await any_job_store.add_job(make_job("high", priority=-1))
    await any_job_store.add_job(make_job("low-2", priority=5))
    await any_job_store.add_job(make_job("normal", priority=0))

    claimed = [(await any_job_store.claim_next("w1")).id for _ in range(4)]
    assert claimed == ["high", "normal", "low-1", "low-2"]


@pytest.mark.asyncio
async def test_claim_marks_active_and_counts_attempt(any_job_store):
    await any_job_store.add_job(make_job("j1"))

    job = await any_job_store.claim_next("w1")
    assert job.state == JobState.ACTIVE
    assert job.attempts_made == 1
    assert job.locked_by == "w1"
    assert job.processed_at is not None


@pytest.mark.asyncio
async def test_concurrent_claims_hand_each_job_out_once(any_job_store):
    for i in range(10):
        await any_job_store.add_job(make_job(f"j{i}"))

    results = await asyncio.gather(*(any_job_store.claim_next(f"w{i}") for i in range(15)))
    claimed = [job.id for job in results if job is not None]
    assert sorted(claimed) == sorted(f"j{i}" for i in range(10))


@pytest.mark.asyncio
async def test_complete_job(any_job_store):
    await any_job_store.add_job(make_job("j1"))
    await any_job_store.claim_next("w1")
    await any_job_store.complete_job("j1")

    job = await any_job_store.get_job("j1")
    assert job.state == JobState.COMPLETED
    assert job.finished_at is not None
    assert job.progress == 100


@pytest.mark.asyncio
async def test_fail_job(any_job_store):
    await any_job_store.add_job(make_job("j1"))
    await any_job_store.claim_next("w1")
    await any_job_store.fail_job("j1", "boom")

    job = await any_job_store.get_job("j1")
    assert job.state == JobState.FAILED
    assert job.failed_reason == "boom"


@pytest.mark.asyncio
async def test_outcome_of_missing_job_raises(any_job_store):
    with pytest.raises(StorageError):
        await any_job_store.complete_job("missing")
    with pytest.raises(StorageError):
        await any_job_store.fail_job("missing", "x")
    with pytest.raises(StorageError):
        await any_job_store.retry_job("missing", "x", timedelta(0))


@pytest.mark.asyncio
async def test_retry_without_delay_is_immediately_claimable(any_job_store):
    await any_job_store.add_job(make_job("j1"))
    await any_job_store.claim_next("w1")
    await any_job_store.retry_job("j1", "transient", timedelta(0))

    job = await any_job_store.claim_next("w1")
    assert job.id == "j1"
    assert job.attempts_made == 2
    assert job.failed_reason == "transient"


@pytest.mark.asyncio
async def test_retry_with_delay_waits_for_backoff(any_job_store):
    await any_job_store.add_job(make_job("j1"))
    await any_job_store.claim_next("w1")
    await any_job_store.retry_job("j1", "transient", timedelta(milliseconds=50))

    assert (await any_job_store.get_job("j1")).state == JobState.DELAYED
    assert await any_job_store.claim_next("w1") is None

    await asyncio.sleep(0.08)
    job = await any_job_store.claim_next("w1")
    assert job is not None and job.id == "j1"


@pytest.mark.asyncio
async def test_requeue_only_failed_jobs(any_job_store):
    await any_job_store.add_job(make_job("j1"))
    await any_job_store.claim_next("w1")
    assert not await any_job_store.requeue_job("j1")

    await any_job_store.fail_job("j1", "boom")
    assert await any_job_store.requeue_job("j1")

    job = await any_job_store.get_job("j1")
    assert job.state == JobState.WAITING
    assert job.attempts_made == 0


@pytest.mark.asyncio
async def test_update_progress_is_clamped(any_job_store):
    await any_job_store.add_job(make_job("j1"))
    await any_job_store.update_progress("j1", 150)
    assert (await any_job_store.get_job("j1")).progress == 100
    await any_job_store.update_progress("j1", 40)
    assert (await any_job_store.get_job("j1")).progress == 40


@pytest.mark.asyncio
async def test_get_jobs_filters_by_state(any_job_store):
    for job_id in ("a", "b", "c"):
        await any_job_store.add_job(make_job(job_id))
    await any_job_store.claim_next("w1")

    assert [j.id for j in await any_job_store.get_jobs()] == ["a", "b", "c"]
    assert [j.id for j in await any_job_store.get_jobs([JobState.WAITING])] == ["b", "c"]
    assert [j.id for j in await any_job_store.get_jobs([JobState.ACTIVE])] == ["a"]
    assert await any_job_store.get_jobs([]) == []


@pytest.mark.asyncio
async def test_count_jobs_reports_every_state(any_job_store):
    await any_job_store.add_job(make_job("a"))
    await any_job_store.add_job(make_job("b"))
    await any_job_store.claim_next("w1")

    counts = await any_job_store.count_jobs()
    assert set(counts) == set(JobState)
    assert counts[JobState.WAITING] == 1
    assert counts[JobState.ACTIVE] == 1
    assert counts[JobState.FAILED] == 0


@pytest.mark.asyncio
async def test_remove_job(any_job_store):
    await any_job_store.add_job(make_job("j1"))
    assert await any_job_store.remove_job("j1")
    assert not await any_job_store.remove_job("j1")
    assert await any_job_store.claim_next("w1") is None


@pytest.mark.asyncio
async def test_clean_by_age(any_job_store):
    await any_job_store.add_job(make_job("old"))
    await any_job_store.claim_next("w1")
    await any_job_store.complete_job("old")

    # Nothing finished before an hour ago
    assert await any_job_store.clean(JobState.COMPLETED, utcnow() - timedelta(hours=1)) == []
    # Everything finished before a minute from now
    removed = await any_job_store.clean(JobState.COMPLETED, utcnow() + timedelta(minutes=1))
    assert removed == ["old"]
    assert await any_job_store.get_job("old") is None


@pytest.mark.asyncio
async def test_clean_without_age_removes_whole_state(any_job_store):
    for job_id in ("a", "b"):
        await any_job_store.add_job(make_job(job_id))
    await any_job_store.claim_next("w1")

    assert await any_job_store.clean(JobState.ACTIVE) == ["a"]
    assert [j.id for j in await any_job_store.get_jobs()] == ["b"]


@pytest.mark.asyncio
async def test_trim_keeps_most_recent(any_job_store):
    for i in range(5):
        await any_job_store.add_job(make_job(f"j{i}"))
        await any_job_store.claim_next("w1")
        await any_job_store.complete_job(f"j{i}")

    assert await any_job_store.trim(JobState.COMPLETED, 2) == 3
    remaining = [j.id for j in await any_job_store.get_jobs([JobState.COMPLETED])]
    assert remaining == ["j3", "j4"]


@pytest.mark.asyncio
async def test_add_job_sets_work_notification(any_job_store):
    assert isinstance(any_job_store, WorkNotificationSource)
    event = any_job_store.work_notify()
    event.clear()
    await any_job_store.add_job(make_job("j1"))
    assert event.is_set()


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(temp_db_path):
    store = SqliteJobStore(str(temp_db_path))
    await store.connect()
    await store.add_job(make_job("j1", documentId="d1"))
    await store.close()

    reopened = SqliteJobStore(str(temp_db_path))
    await reopened.connect()
    try:
        job = await reopened.get_job("j1")
        assert job.data == {"documentId": "d1"}
        assert job.state == JobState.WAITING
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_requires_connect():
    store = SqliteJobStore(":memory:")
    with pytest.raises(StorageError):
        await store.get_job("j1")
