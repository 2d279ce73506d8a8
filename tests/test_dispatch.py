"""Tests for dispatching, outcome handling, queue management and cleanup."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from pyconveyor.config import QueueSettings
from pyconveyor.dispatch import (
    DispatchError,
    Dispatcher,
    JobNotFoundError,
    QueueCleaner,
    QueueManager,
    check_should_retry,
    handle_job_completion,
    handle_job_error,
)
from pyconveyor.events import EventType
from pyconveyor.models import Backoff, Job, JobOptions, JobState, NonRetryableError
from pyconveyor.storage import InMemoryJobStore, StorageError


class UnreachableStore(InMemoryJobStore):
    async def add_job(self, job):
        raise StorageError("connection refused")

    async def clean(self, state, older_than=None):
        raise StorageError("connection refused")


async def claimed(store, job_type="test", options=None, **data) -> Job:
    """Enqueue a job and claim it, as a worker would."""
    job = Job(id=str(uuid4()), type=job_type, data=data)
    if options is not None:
        job = job.evolve(options=options)
    await store.add_job(job)
    return await store.claim_next("w1")


# ============================================================================
# Dispatcher
# ============================================================================


@pytest.mark.asyncio
async def test_dispatch_enqueues_waiting_job(job_store, bus, recorder):
    dispatcher = Dispatcher(job_store, bus)
    job_id = await dispatcher.dispatch("workflow", {"definitionId": "ingest"})

    job = await job_store.get_job(job_id)
    assert job.state == JobState.WAITING
    assert job.type == "workflow"
    assert job.options == JobOptions(attempts=3, backoff=Backoff.exponential(2000))

    [added] = recorder.of_type(EventType.QUEUE_JOB_ADDED)
    assert added.payload == {
        "jobId": job_id,
        "jobType": "workflow",
        "data": {"definitionId": "ingest"},
    }


@pytest.mark.asyncio
async def test_dispatch_ids_are_unique_and_ordered(job_store, bus):
    dispatcher = Dispatcher(job_store, bus)
    ids = [await dispatcher.dispatch("t", {}) for _ in range(5)]
    assert len(set(ids)) == 5
    assert [j.id for j in await job_store.get_jobs()] == ids


@pytest.mark.asyncio
async def test_dispatch_merges_partial_options(job_store, bus):
    dispatcher = Dispatcher(job_store, bus)
    job_id = await dispatcher.dispatch("t", {}, {"priority": 5, "timeout": 1000})

    options = (await job_store.get_job(job_id)).options
    assert options.priority == 5
    assert options.timeout_ms == 1000
    assert options.attempts == 3
    assert options.backoff == Backoff.exponential(2000)


@pytest.mark.asyncio
async def test_dispatch_uses_settings_defaults(job_store, bus):
    settings = QueueSettings(max_attempts=7, backoff_delay_ms=10)
    job_id = await Dispatcher(job_store, bus, settings).dispatch("t", {})

    options = (await job_store.get_job(job_id)).options
    assert options.attempts == 7
    assert options.backoff == Backoff.exponential(10)


@pytest.mark.asyncio
async def test_with_options(job_store, bus):
    urgent = Dispatcher(job_store, bus).with_options({"priority": -10})
    job_id = await urgent.dispatch("t", {})
    assert (await job_store.get_job(job_id)).options.priority == -10
    assert urgent.store is job_store


@pytest.mark.asyncio
async def test_dispatch_with_retry(job_store, bus):
    job_id = await Dispatcher(job_store, bus).dispatch_with_retry("t", {}, attempts=5, delay_ms=50)
    options = (await job_store.get_job(job_id)).options
    assert options.attempts == 5
    assert options.backoff == Backoff.exponential(50)


@pytest.mark.asyncio
async def test_dispatch_storage_failure(bus, recorder):
    with pytest.raises(DispatchError, match="connection refused"):
        await Dispatcher(UnreachableStore(), bus).dispatch("t", {})
    assert recorder.events == []


@pytest.mark.asyncio
async def test_dispatch_survives_subscriber_error(job_store, bus):
    def broken(event):
        raise RuntimeError("subscriber broke")

    bus.subscribe(EventType.QUEUE_JOB_ADDED, broken)
    job_id = await Dispatcher(job_store, bus).dispatch("t", {"a": 1})

    [job] = await job_store.get_jobs([JobState.WAITING])
    assert job.id == job_id


@pytest.mark.asyncio
async def test_dispatch_rejects_malformed_options(job_store, bus):
    with pytest.raises(ValueError):
        await Dispatcher(job_store, bus).dispatch("t", {}, {"backoff": {"type": "linear"}})
    assert await job_store.get_jobs() == []


# ============================================================================
# Retry decision
# ============================================================================


def make_claimed_job(attempts_made: int, attempts: int = 3, backoff=None) -> Job:
    return Job(
        id="j1",
        type="t",
        data={},
        options=JobOptions(attempts=attempts, backoff=backoff),
        attempts_made=attempts_made,
    )


def test_retry_with_exponential_backoff():
    backoff = Backoff.exponential(1000)
    error = RuntimeError("transient")
    assert check_should_retry(make_claimed_job(1, backoff=backoff), error) == timedelta(seconds=1)
    assert check_should_retry(make_claimed_job(2, backoff=backoff), error) == timedelta(seconds=2)


def test_no_retry_when_attempts_exhausted():
    assert check_should_retry(make_claimed_job(3), RuntimeError("x")) is None


def test_no_retry_for_non_retryable_error():
    assert check_should_retry(make_claimed_job(1), NonRetryableError("bad input")) is None


def test_retry_without_backoff_is_immediate():
    assert check_should_retry(make_claimed_job(1), RuntimeError("x")) == timedelta(0)


# ============================================================================
# Outcome handling
# ============================================================================


@pytest.mark.asyncio
async def test_handle_job_completion(job_store, bus, recorder):
    job = await claimed(job_store, documentId="d1")
    await handle_job_completion(job_store, bus, QueueSettings(), "w1", job)

    assert (await job_store.get_job(job.id)).state == JobState.COMPLETED
    [completed] = recorder.of_type(EventType.QUEUE_JOB_COMPLETED)
    assert completed.payload["data"] == {"documentId": "d1"}


@pytest.mark.asyncio
async def test_completion_trims_old_completed_jobs(job_store, bus):
    settings = QueueSettings(remove_on_complete=2)
    for _ in range(4):
        job = await claimed(job_store)
        await handle_job_completion(job_store, bus, settings, "w1", job)

    assert len(await job_store.get_jobs([JobState.COMPLETED])) == 2


@pytest.mark.asyncio
async def test_subscriber_errors_do_not_break_completion(job_store, bus):
    def broken(event):
        raise RuntimeError("subscriber broke")

    bus.subscribe(EventType.QUEUE_JOB_COMPLETED, broken)
    job = await claimed(job_store)
    await handle_job_completion(job_store, bus, QueueSettings(), "w1", job)
    assert (await job_store.get_job(job.id)).state == JobState.COMPLETED


@pytest.mark.asyncio
async def test_handle_job_error_schedules_retry(job_store, bus, recorder):
    job = await claimed(job_store, options=JobOptions(attempts=3, backoff=Backoff.fixed(60000)))

    retried = await handle_job_error(
        job_store, bus, QueueSettings(), "w1", job, RuntimeError("transient")
    )

    assert retried
    stored = await job_store.get_job(job.id)
    assert stored.state == JobState.DELAYED
    assert stored.failed_reason == "transient"
    [retry] = recorder.of_type(EventType.QUEUE_JOB_RETRY)
    assert retry.payload["data"] == {"attempt": 1, "delayMs": 60000}
    assert retry.payload["error"] == "transient"
    assert recorder.of_type(EventType.QUEUE_JOB_FAILED) == []


@pytest.mark.asyncio
async def test_handle_job_error_fails_when_exhausted(job_store, bus, recorder):
    job = await claimed(job_store, options=JobOptions(attempts=1), documentId="d1")

    retried = await handle_job_error(job_store, bus, QueueSettings(), "w1", job, RuntimeError("x"))

    assert not retried
    stored = await job_store.get_job(job.id)
    assert stored.state == JobState.FAILED
    assert stored.failed_reason == "x"
    [failed] = recorder.of_type(EventType.QUEUE_JOB_FAILED)
    assert failed.payload["error"] == "x"
    assert failed.payload["data"] == {"documentId": "d1"}


@pytest.mark.asyncio
async def test_handle_job_error_uses_exception_name_without_message(job_store, bus):
    job = await claimed(job_store, options=JobOptions(attempts=1))
    await handle_job_error(job_store, bus, QueueSettings(), "w1", job, KeyError())
    assert (await job_store.get_job(job.id)).failed_reason == "KeyError"


@pytest.mark.asyncio
async def test_failure_trims_old_failed_jobs(job_store, bus):
    settings = QueueSettings(remove_on_fail=1)
    for _ in range(3):
        job = await claimed(job_store, options=JobOptions(attempts=1))
        await handle_job_error(job_store, bus, settings, "w1", job, RuntimeError("x"))

    assert len(await job_store.get_jobs([JobState.FAILED])) == 1


# ============================================================================
# QueueManager
# ============================================================================


@pytest.mark.asyncio
async def test_job_details(job_store, bus):
    manager = QueueManager(job_store)
    job_id = await Dispatcher(job_store, bus).dispatch("t", {"a": 1})

    details = await manager.get_job_details(job_id)
    assert details.id == job_id
    assert details.status == JobState.WAITING
    assert details.attempts_limit == 3
    assert await manager.get_job_details("missing") is None


@pytest.mark.asyncio
async def test_jobs_by_correlation(job_store, bus):
    dispatcher = Dispatcher(job_store, bus)
    top = await dispatcher.dispatch("t", {"documentId": "d1"})
    nested = await dispatcher.dispatch("t", {"data": {"documentId": "d1"}})
    await dispatcher.dispatch("t", {"documentId": "d2"})

    found = await QueueManager(job_store).get_jobs_by_correlation("documentId", "d1")
    assert [d.id for d in found] == [top, nested]


@pytest.mark.asyncio
async def test_cancel_by_correlation_skips_finished_jobs(job_store, bus):
    dispatcher = Dispatcher(job_store, bus)
    finished = await dispatcher.dispatch("t", {"documentId": "d1"})
    job = await job_store.claim_next("w1")
    await job_store.complete_job(job.id)

    await dispatcher.dispatch("t", {"documentId": "d1"})
    await job_store.claim_next("w1")  # active
    waiting = await dispatcher.dispatch("t", {"documentId": "d1"})
    other = await dispatcher.dispatch("t", {"documentId": "d2"})

    cancelled = await QueueManager(job_store).cancel_jobs_by_correlation("documentId", "d1")

    assert cancelled == 2
    remaining = {j.id for j in await job_store.get_jobs()}
    assert remaining == {finished, other}
    assert waiting not in remaining


@pytest.mark.asyncio
async def test_queue_stats(job_store, bus):
    dispatcher = Dispatcher(job_store, bus)
    for _ in range(3):
        await dispatcher.dispatch("t", {})
    await job_store.claim_next("w1")

    stats = await QueueManager(job_store).get_queue_stats()
    assert stats == {
        "waiting": 2,
        "active": 1,
        "completed": 0,
        "failed": 0,
        "delayed": 0,
        "total": 3,
    }


@pytest.mark.asyncio
async def test_manager_retry_job(job_store, bus):
    manager = QueueManager(job_store)
    job = await claimed(job_store)

    with pytest.raises(JobNotFoundError):
        await manager.retry_job("missing")
    with pytest.raises(ValueError, match="only failed jobs"):
        await manager.retry_job(job.id)

    await job_store.fail_job(job.id, "boom")
    await manager.retry_job(job.id)
    assert (await job_store.get_job(job.id)).state == JobState.WAITING


@pytest.mark.asyncio
async def test_pause_and_resume(job_store):
    manager = QueueManager(job_store)
    job = await claimed(job_store)

    await manager.pause_job(job.id)
    paused = await job_store.get_job(job.id)
    assert paused.state == JobState.FAILED
    assert paused.failed_reason == "Job paused by user"

    await manager.retry_job(job.id)
    assert (await job_store.get_job(job.id)).state == JobState.WAITING

    with pytest.raises(JobNotFoundError):
        await manager.pause_job("missing")


@pytest.mark.asyncio
async def test_manager_remove_job(job_store):
    manager = QueueManager(job_store)
    job = await claimed(job_store)
    assert await manager.remove_job(job.id)
    assert not await manager.remove_job(job.id)


# ============================================================================
# QueueCleaner
# ============================================================================


async def finished_jobs(store):
    """One completed, one failed, one active and one waiting job."""
    done = await claimed(store)
    await store.complete_job(done.id)
    broken = await claimed(store)
    await store.fail_job(broken.id, "boom")
    await claimed(store)
    await store.add_job(Job(id="waiting", type="t", data={}))


@pytest.mark.asyncio
async def test_cleanup_respects_retention(job_store):
    await finished_jobs(job_store)

    result = await QueueCleaner(job_store).cleanup_old_jobs()

    assert result == {"completed": 0, "failed": 0, "stalled": 0}
    assert len(await job_store.get_jobs()) == 4


@pytest.mark.asyncio
async def test_cleanup_removes_expired_jobs(job_store):
    await finished_jobs(job_store)
    await asyncio.sleep(0.01)
    settings = QueueSettings(
        completed_retention=timedelta(0),
        failed_retention=timedelta(0),
        stalled_retention=timedelta(0),
    )

    result = await QueueCleaner(job_store, settings).cleanup_old_jobs()

    assert result == {"completed": 1, "failed": 1, "stalled": 1}
    assert [j.id for j in await job_store.get_jobs()] == ["waiting"]


@pytest.mark.asyncio
async def test_cleanup_logs_storage_errors():
    result = await QueueCleaner(UnreachableStore()).cleanup_old_jobs()
    assert result == {"completed": 0, "failed": 0, "stalled": 0}


@pytest.mark.asyncio
async def test_manual_cleanup(job_store):
    await finished_jobs(job_store)

    result = await QueueCleaner(job_store).manual_cleanup([JobState.COMPLETED])
    assert result == {"completed": 1, "failed": 0, "stalled": 0}

    result = await QueueCleaner(job_store).manual_cleanup()
    assert result == {"completed": 0, "failed": 1, "stalled": 1}
    assert [j.id for j in await job_store.get_jobs()] == ["waiting"]


@pytest.mark.asyncio
async def test_manual_cleanup_refuses_pending_states(job_store):
    with pytest.raises(ValueError):
        await QueueCleaner(job_store).manual_cleanup([JobState.WAITING])


@pytest.mark.asyncio
async def test_scheduled_cleanup(job_store):
    await finished_jobs(job_store)
    settings = QueueSettings(completed_retention=timedelta(0))
    cleaner = QueueCleaner(job_store, settings)

    cleaner.start(interval=0.01)
    assert cleaner.is_running()
    await asyncio.sleep(0.05)
    await cleaner.stop()

    assert not cleaner.is_running()
    assert await job_store.get_jobs([JobState.COMPLETED]) == []
    assert len(await job_store.get_jobs([JobState.FAILED])) == 1
