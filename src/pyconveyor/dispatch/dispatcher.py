"""Job dispatcher: the producer side of the queue.

Turns ``(job_type, data, options)`` into a persisted WAITING job and
returns immediately. The job type is not checked here; a type without a
handler fails when a worker claims the job.
"""

from __future__ import annotations

import logging
from typing import Any

from uuid_extensions import uuid7

from pyconveyor.config import QueueSettings
from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.models import Backoff, Job, JobOptions
from pyconveyor.storage.base import JobStore

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """The job could not be enqueued."""

    pass


class Dispatcher:
    """Enqueues jobs.

    Usage:
        dispatcher = Dispatcher(store, bus)

        job_id = await dispatcher.dispatch(
            "workflow",
            {"definitionId": "ingest", "items": segments},
            {"attempts": 5, "backoff": {"type": "fixed", "delay": 500}},
        )
    """

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        settings: QueueSettings | None = None,
        default_options: JobOptions | None = None,
    ):
        self._store = store
        self._bus = bus
        self._settings = settings or QueueSettings()
        self._default_options = default_options or self._settings.default_job_options()

    def with_options(self, options: JobOptions | dict[str, Any]) -> Dispatcher:
        """
        Return a dispatcher sharing this store whose defaults are ``options``.

        Example:
            urgent = dispatcher.with_options({"priority": -10})
            await urgent.dispatch("chunking", data)
        """
        return Dispatcher(
            self._store,
            self._bus,
            self._settings,
            default_options=self._resolve_options(options),
        )

    def _resolve_options(self, options: JobOptions | dict[str, Any] | None) -> JobOptions:
        if options is None:
            return self._default_options
        if isinstance(options, JobOptions):
            return options
        return JobOptions.from_dict({**self._default_options.to_dict(), **options})

    async def dispatch(
        self,
        job_type: str,
        data: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> str:
        """
        Enqueue a job.

        Args:
            job_type: Handler type string
            data: Handler payload
            options: Attempts, backoff, timeout and priority; missing fields
                take the dispatcher defaults

        Returns:
            The new job id (UUIDv7)

        Raises:
            DispatchError: If the queue storage rejects the job
            ValueError: If the options are malformed
        """
        job = Job(
            id=str(uuid7()),
            type=job_type,
            data=dict(data),
            options=self._resolve_options(options),
        )
        try:
            job_id = await self._store.add_job(job)
        except Exception as e:
            raise DispatchError(f"Failed to enqueue job {job_type}: {e}") from e

        logger.debug(f"Dispatched job {job_id} ({job_type}) priority={job.options.priority}")
        try:
            self._bus.publish(Event.queue(EventType.QUEUE_JOB_ADDED, job_id, job_type, job.data))
        except Exception as e:
            # The job is already queued
            logger.error(f"Subscriber of {EventType.QUEUE_JOB_ADDED} failed for job {job_id}: {e}")
        return job_id

    async def dispatch_with_retry(
        self,
        job_type: str,
        data: dict[str, Any],
        attempts: int = 3,
        delay_ms: int = 1000,
    ) -> str:
        """Dispatch with ``attempts`` and an exponential backoff of ``delay_ms``."""
        options = JobOptions(
            attempts=attempts,
            backoff=Backoff.exponential(delay_ms),
            timeout_ms=self._default_options.timeout_ms,
            priority=self._default_options.priority,
        )
        return await self.dispatch(job_type, data, options)

    @property
    def store(self) -> JobStore:
        return self._store
