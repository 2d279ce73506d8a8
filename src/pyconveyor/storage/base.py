"""
JobStore and ExecutionStore - Abstract interfaces for storage backends.

Design Pattern: Adapter Pattern
JobStore defines the target interface of the durable job queue and
ExecutionStore the one for workflow definitions and execution records.
Different backends (Memory, SQLite, Redis) adapt to these interfaces.

Design Principle: Dependency Inversion (SOLID)
High-level modules (Dispatcher, Worker, QueueManager, WorkflowExecutor)
depend on these abstractions, not on concrete implementations, which keeps
tests on the in-memory adapters.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from pyconveyor.models import Execution, Job, JobState, WorkflowDefinition


class StorageError(Exception):
    """
    Storage operation failed.

    Raised when the backend is unreachable or a referenced record is missing.
    """

    pass


class JobStore(ABC):
    """
    Abstract durable job queue.

    The store exclusively owns job lifecycle state. Claiming is atomic:
    a job is handed to at most one worker per attempt.
    """

    # ========================================================================
    # Queue Operations
    # ========================================================================

    @abstractmethod
    async def add_job(self, job: Job) -> str:
        """
        Persist a new job in the WAITING state.

        Implementations should set the work notification so idle workers wake.

        Args:
            job: Job to enqueue

        Returns:
            The job id

        Raises:
            StorageError: If the backend is unreachable
        """
        pass

    @abstractmethod
    async def claim_next(self, worker_id: str) -> Job | None:
        """
        Claim the next runnable job.

        DELAYED jobs whose backoff elapsed are promoted first. The claimed job
        moves to ACTIVE, gets ``processed_at`` stamped and ``attempts_made``
        incremented. Ordering is by priority (lower first), then FIFO.

        Args:
            worker_id: Identifier of the claiming worker

        Returns:
            The claimed job, or None if nothing is runnable
        """
        pass

    @abstractmethod
    async def complete_job(self, job_id: str) -> None:
        """
        Mark an ACTIVE job COMPLETED.

        Raises:
            StorageError: If the job does not exist
        """
        pass

    @abstractmethod
    async def fail_job(self, job_id: str, error_message: str) -> None:
        """
        Mark a job FAILED (terminal).

        Raises:
            StorageError: If the job does not exist
        """
        pass

    @abstractmethod
    async def retry_job(self, job_id: str, error_message: str, delay: timedelta) -> None:
        """
        Put a failed attempt back in the queue.

        With a positive delay the job becomes DELAYED until ``now + delay``,
        otherwise it goes straight back to WAITING.

        Raises:
            StorageError: If the job does not exist
        """
        pass

    @abstractmethod
    async def requeue_job(self, job_id: str) -> bool:
        """
        Move a FAILED job back to WAITING with its attempt count reset.

        Returns:
            True if the job was failed and has been requeued
        """
        pass

    @abstractmethod
    async def update_progress(self, job_id: str, progress: int) -> None:
        """Record handler progress (0-100) for a job."""
        pass

    # ========================================================================
    # Introspection and Removal
    # ========================================================================

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """Retrieve a job by id, None if missing."""
        pass

    @abstractmethod
    async def get_jobs(self, states: Iterable[JobState] | None = None) -> list[Job]:
        """
        List jobs, optionally restricted to ``states``.

        Returns:
            Jobs ordered by creation (oldest first)
        """
        pass

    @abstractmethod
    async def count_jobs(self) -> dict[JobState, int]:
        """Return the number of jobs per state (every state present)."""
        pass

    @abstractmethod
    async def remove_job(self, job_id: str) -> bool:
        """
        Delete a job regardless of state.

        Returns:
            True if a job was removed
        """
        pass

    @abstractmethod
    async def clean(self, state: JobState, older_than: datetime | None = None) -> list[str]:
        """
        Delete jobs in ``state`` whose reference timestamp is before ``older_than``.

        The reference timestamp is ``finished_at`` for COMPLETED/FAILED,
        ``processed_at`` for ACTIVE and ``created_at`` otherwise. With
        ``older_than=None`` every job in the state is removed.

        Returns:
            Ids of removed jobs
        """
        pass

    @abstractmethod
    async def trim(self, state: JobState, keep: int) -> int:
        """
        Keep only the ``keep`` most recently finished jobs in ``state``.

        Returns:
            Number of jobs removed
        """
        pass

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        """Clear all data (tests and demos)."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class ExecutionStore(ABC):
    """
    Abstract persistence for workflow definitions and execution records.

    Execution records are keyed by id; each id keeps every attempt in order
    and ``get_execution`` returns the latest one.
    """

    @abstractmethod
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a definition."""
        pass

    @abstractmethod
    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        pass

    @abstractmethod
    async def list_definitions(self) -> list[WorkflowDefinition]:
        pass

    @abstractmethod
    async def save_execution(self, execution: Execution) -> None:
        """
        Insert or update the record for ``(execution.id, execution.attempt)``.

        Raises:
            StorageError: If the backend is unreachable
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        """Return the latest attempt for ``execution_id``."""
        pass

    @abstractmethod
    async def get_execution_attempts(self, execution_id: str) -> list[Execution]:
        """Return every attempt for ``execution_id``, oldest first."""
        pass

    async def reset(self) -> None:
        pass

    async def close(self) -> None:
        pass


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Protocol for stores that wake workers when work becomes available.

    Workers wait on the event instead of polling with sleep(). Stores set
    the event when a job is added or requeued; the worker clears it after
    waking.

    Example:
        ```python
        class MyStore(JobStore):
            def __init__(self):
                self._work_notify = asyncio.Event()

            def work_notify(self) -> asyncio.Event:
                return self._work_notify
        ```
    """

    def work_notify(self) -> asyncio.Event:
        """Return the event set whenever new work is enqueued."""
        ...


def reference_time(job: Job) -> datetime:
    """Timestamp used by age-based cleanup for ``job``'s current state."""
    if job.state in (JobState.COMPLETED, JobState.FAILED):
        return job.finished_at or job.created_at
    if job.state == JobState.ACTIVE:
        return job.processed_at or job.created_at
    return job.created_at
