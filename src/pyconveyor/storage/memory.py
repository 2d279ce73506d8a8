"""In-memory storage implementation for pyconveyor.

Design Pattern: Adapter Pattern
InMemoryJobStore and InMemoryExecutionStore adapt plain dictionaries to
the JobStore and ExecutionStore interfaces.

Instances are immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable
from datetime import datetime, timedelta

from pyconveyor.models import (
    Execution,
    Job,
    JobState,
    WorkflowDefinition,
    utcnow,
)
from pyconveyor.storage.base import ExecutionStore, JobStore, StorageError, reference_time


class InMemoryJobStore(JobStore):
    """In-memory job queue for tests and single-process deployments.

    Can be substituted for SqliteJobStore without changing client code.

    Usage:
        store = InMemoryJobStore()
        await store.add_job(job)
        claimed = await store.claim_next("worker-1")
    """

    def __init__(self):
        # Storage: {job_id: Job}
        self._jobs: dict[str, Job] = {}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()
        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return "InMemoryJobStore"

    async def add_job(self, job: Job) -> str:
        async with self._lock:
            self._jobs[job.id] = job.evolve(state=JobState.WAITING, sequence=next(self._sequence))
            # The worker clears the event upon waking; clearing here could lose a signal.
            self._work_notify.set()
            return job.id

    async def claim_next(self, worker_id: str) -> Job | None:
        """Claim the highest-priority, oldest runnable job.

        Implements daisy-chain notification: if runnable work remains after
        the claim, other workers are woken.
        """
        async with self._lock:
            now = utcnow()
            self._promote_delayed(now)

            waiting = [j for j in self._jobs.values() if j.state == JobState.WAITING]
            if not waiting:
                return None

            job = min(waiting, key=lambda j: (j.options.priority, j.sequence))
            claimed = job.evolve(
                state=JobState.ACTIVE,
                attempts_made=job.attempts_made + 1,
                processed_at=now,
                locked_by=worker_id,
                available_at=None,
            )
            self._jobs[job.id] = claimed

            if len(waiting) > 1:
                self._work_notify.set()

            return claimed

    def _promote_delayed(self, now: datetime) -> None:
        for job_id, job in list(self._jobs.items()):
            if job.state == JobState.DELAYED and (
                job.available_at is None or job.available_at <= now
            ):
                self._jobs[job_id] = job.evolve(state=JobState.WAITING)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise StorageError(f"Job not found: job_id={job_id}")
        return job

    async def complete_job(self, job_id: str) -> None:
        async with self._lock:
            job = self._require(job_id)
            self._jobs[job_id] = job.evolve(
                state=JobState.COMPLETED, finished_at=utcnow(), progress=100, locked_by=None
            )

    async def fail_job(self, job_id: str, error_message: str) -> None:
        async with self._lock:
            job = self._require(job_id)
            self._jobs[job_id] = job.evolve(
                state=JobState.FAILED,
                finished_at=utcnow(),
                failed_reason=error_message,
                locked_by=None,
            )

    async def retry_job(self, job_id: str, error_message: str, delay: timedelta) -> None:
        async with self._lock:
            job = self._require(job_id)
            if delay > timedelta(0):
                updated = job.evolve(
                    state=JobState.DELAYED,
                    available_at=utcnow() + delay,
                    failed_reason=error_message,
                    locked_by=None,
                )
            else:
                updated = job.evolve(
                    state=JobState.WAITING, failed_reason=error_message, locked_by=None
                )
            self._jobs[job_id] = updated
            self._work_notify.set()

    async def requeue_job(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.FAILED:
                return False
            self._jobs[job_id] = job.evolve(
                state=JobState.WAITING,
                attempts_made=0,
                finished_at=None,
                sequence=next(self._sequence),
            )
            self._work_notify.set()
            return True

    async def update_progress(self, job_id: str, progress: int) -> None:
        async with self._lock:
            job = self._require(job_id)
            self._jobs[job_id] = job.evolve(progress=max(0, min(100, progress)))

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def get_jobs(self, states: Iterable[JobState] | None = None) -> list[Job]:
        async with self._lock:
            wanted = set(states) if states is not None else None
            jobs = [j for j in self._jobs.values() if wanted is None or j.state in wanted]
            return sorted(jobs, key=lambda j: j.sequence)

    async def count_jobs(self) -> dict[JobState, int]:
        async with self._lock:
            counts = {state: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state] += 1
            return counts

    async def remove_job(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    async def clean(self, state: JobState, older_than: datetime | None = None) -> list[str]:
        async with self._lock:
            removed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state == state and (older_than is None or reference_time(job) < older_than)
            ]
            for job_id in removed:
                del self._jobs[job_id]
            return removed

    async def trim(self, state: JobState, keep: int) -> int:
        async with self._lock:
            jobs = sorted(
                (j for j in self._jobs.values() if j.state == state),
                key=lambda j: (reference_time(j), j.sequence),
                reverse=True,
            )
            stale = jobs[max(keep, 0) :]
            for job in stale:
                del self._jobs[job.id]
            return len(stale)

    async def reset(self) -> None:
        async with self._lock:
            self._jobs.clear()
            self._work_notify.clear()

    def work_notify(self) -> asyncio.Event:
        return self._work_notify


class InMemoryExecutionStore(ExecutionStore):
    """In-memory definitions and execution attempts."""

    def __init__(self):
        self._definitions: dict[str, WorkflowDefinition] = {}
        # Storage: {execution_id: [attempt 1, attempt 2, ...]}
        self._executions: dict[str, list[Execution]] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryExecutionStore"

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            self._definitions[definition.id] = definition

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        async with self._lock:
            return self._definitions.get(definition_id)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        async with self._lock:
            return list(self._definitions.values())

    async def save_execution(self, execution: Execution) -> None:
        async with self._lock:
            attempts = self._executions.setdefault(execution.id, [])
            for index, existing in enumerate(attempts):
                if existing.attempt == execution.attempt:
                    attempts[index] = execution
                    return
            attempts.append(execution)
            attempts.sort(key=lambda e: e.attempt)

    async def get_execution(self, execution_id: str) -> Execution | None:
        async with self._lock:
            attempts = self._executions.get(execution_id)
            return attempts[-1] if attempts else None

    async def get_execution_attempts(self, execution_id: str) -> list[Execution]:
        async with self._lock:
            return list(self._executions.get(execution_id, []))

    async def reset(self) -> None:
        async with self._lock:
            self._definitions.clear()
            self._executions.clear()
