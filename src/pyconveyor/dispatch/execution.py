"""Job outcome handling.

Handles the three ways a claimed job can end:
- Success: mark completed, publish QUEUE_JOB_COMPLETED, trim old completed jobs
- Retryable error with attempts left: back to the queue with backoff,
  publish QUEUE_JOB_RETRY
- Anything else: mark failed, publish QUEUE_JOB_FAILED once, trim old
  failed jobs

Design: Information Hiding (Parnas)
Retry policy lives here so the worker loop stays a claim/run/report cycle.
Storage and subscriber errors are logged, never raised: the handler has
already run and its outcome must not turn into a second failure.
"""

import logging
from datetime import timedelta

from pyconveyor.config import QueueSettings
from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.models import Job, JobState, is_retryable
from pyconveyor.storage.base import JobStore

logger = logging.getLogger(__name__)

__all__ = [
    "check_should_retry",
    "error_message",
    "handle_job_completion",
    "handle_job_error",
]


def error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _publish(bus: EventBus, event: Event, worker_id: str) -> None:
    try:
        bus.publish(event)
    except Exception as e:
        logger.error(f"Worker {worker_id}: subscriber of {event.type} failed: {e}")


async def _trim(store: JobStore, state: JobState, keep: int, worker_id: str) -> None:
    if keep < 0:
        return
    try:
        removed = await store.trim(state, keep)
        if removed:
            logger.debug(f"Worker {worker_id} trimmed {removed} {state.value} jobs")
    except Exception as e:
        logger.warning(f"Worker {worker_id} failed to trim {state.value} jobs: {e}")


async def handle_job_completion(
    store: JobStore,
    bus: EventBus,
    settings: QueueSettings,
    worker_id: str,
    job: Job,
) -> None:
    """Mark ``job`` completed and report it.

    Example:
        ```python
        await handle_job_completion(store, bus, settings, "worker-1", job)
        ```
    """
    logger.info(f"Worker {worker_id} completed job: job_id={job.id}, type={job.type}")

    try:
        await store.complete_job(job.id)
    except Exception as e:
        logger.error(f"Worker {worker_id} failed to mark job complete: {e}")
        return

    _publish(
        bus,
        Event.queue(EventType.QUEUE_JOB_COMPLETED, job.id, job.type, job.data),
        worker_id,
    )
    await _trim(store, JobState.COMPLETED, settings.remove_on_complete, worker_id)


def check_should_retry(job: Job, error: BaseException) -> timedelta | None:
    """Decide whether a failed attempt gets another one.

    ``job.attempts_made`` already counts the attempt that just failed.

    Returns:
        Delay before the next attempt, or None if the job should fail

    Example:
        ```python
        delay = check_should_retry(job, error)
        if delay is not None:
            await store.retry_job(job.id, str(error), delay)
        else:
            await store.fail_job(job.id, str(error))
        ```
    """
    if not is_retryable(error):
        logger.info(f"Job {job.id} raised a non-retryable error - will not retry")
        return None

    if job.attempts_made >= job.options.attempts:
        logger.debug(
            f"Job {job.id} exhausted its attempts ({job.attempts_made}/{job.options.attempts})"
        )
        return None

    backoff = job.options.backoff
    delay_ms = backoff.delay_for_attempt(job.attempts_made) if backoff is not None else 0

    logger.debug(
        f"Job {job.id} will retry (attempt {job.attempts_made + 1}/{job.options.attempts}) "
        f"after {delay_ms}ms"
    )
    return timedelta(milliseconds=delay_ms)


async def handle_job_error(
    store: JobStore,
    bus: EventBus,
    settings: QueueSettings,
    worker_id: str,
    job: Job,
    error: BaseException,
) -> bool:
    """Retry or fail ``job`` after its handler raised ``error``.

    Returns:
        True if another attempt was scheduled
    """
    message = error_message(error)
    logger.error(f"Worker {worker_id} job failed: job_id={job.id}, error={message}")

    delay = check_should_retry(job, error)

    if delay is not None:
        logger.info(
            f"Worker {worker_id} retrying job: job_id={job.id}, "
            f"attempt={job.attempts_made + 1}, delay={delay}"
        )
        try:
            await store.retry_job(job.id, message, delay)
        except Exception as e:
            logger.error(f"Worker {worker_id} failed to schedule retry: {e}")
            return False
        _publish(
            bus,
            Event.queue(
                EventType.QUEUE_JOB_RETRY,
                job.id,
                job.type,
                {
                    "attempt": job.attempts_made,
                    "delayMs": int(delay.total_seconds() * 1000),
                },
                error=message,
            ),
            worker_id,
        )
        return True

    try:
        await store.fail_job(job.id, message)
    except Exception as e:
        logger.error(f"Worker {worker_id} failed to mark job failed: {e}")
        return False

    _publish(
        bus,
        Event.queue(EventType.QUEUE_JOB_FAILED, job.id, job.type, job.data, error=message),
        worker_id,
    )
    await _trim(store, JobState.FAILED, settings.remove_on_fail, worker_id)
    return False
