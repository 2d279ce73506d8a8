"""Queue introspection and management.

Read-side views of the queue (job details, correlation lookups, counts)
plus the operator actions: retry, pause, remove and cancel by correlation.
"""

from __future__ import annotations

import logging
from typing import Any

from pyconveyor.models import JobDetails, JobState
from pyconveyor.storage.base import JobStore

logger = logging.getLogger(__name__)

CANCELLABLE_STATES = tuple(state for state in JobState if state.is_cancellable)


class JobNotFoundError(Exception):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class QueueManager:
    """Operator view of the job queue.

    Usage:
        manager = QueueManager(store)
        stats = await manager.get_queue_stats()
        jobs = await manager.get_jobs_by_correlation("documentId", document_id)
        cancelled = await manager.cancel_jobs_by_correlation("documentId", document_id)
    """

    def __init__(self, store: JobStore):
        self._store = store

    async def get_job_details(self, job_id: str) -> JobDetails | None:
        job = await self._store.get_job(job_id)
        return JobDetails.from_job(job) if job is not None else None

    async def get_jobs_by_correlation(self, field_name: str, value: Any) -> list[JobDetails]:
        """All jobs whose ``data[field_name]`` or ``data["data"][field_name]`` equals value."""
        jobs = await self._store.get_jobs()
        return [JobDetails.from_job(job) for job in jobs if job.correlates_with(field_name, value)]

    async def cancel_jobs_by_correlation(self, field_name: str, value: Any) -> int:
        """
        Remove matching jobs that are waiting, active or delayed.

        An active job's handler keeps running; the worker discards its
        outcome once it notices the job is gone.

        Returns:
            Number of jobs removed
        """
        logger.info(f"Cancelling jobs where {field_name}={value!r}")
        jobs = await self._store.get_jobs(CANCELLABLE_STATES)

        cancelled = 0
        for job in jobs:
            if not job.correlates_with(field_name, value):
                continue
            try:
                if await self._store.remove_job(job.id):
                    cancelled += 1
            except Exception as e:
                logger.warning(f"Failed to cancel job {job.id}: {e}")

        logger.info(f"Cancelled {cancelled} jobs where {field_name}={value!r}")
        return cancelled

    async def get_queue_stats(self) -> dict[str, int]:
        """Job counts per state plus ``total``."""
        counts = await self._store.count_jobs()
        stats = {state.value: counts.get(state, 0) for state in JobState}
        stats["total"] = sum(stats.values())
        return stats

    async def retry_job(self, job_id: str) -> None:
        """
        Put a failed job back in the queue with its attempt count reset.

        Raises:
            JobNotFoundError: If the job does not exist
            ValueError: If the job is not failed
        """
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not await self._store.requeue_job(job_id):
            raise ValueError(f"Job {job_id} is {job.state.value}, only failed jobs can be retried")
        logger.info(f"Requeued failed job {job_id}")

    async def pause_job(self, job_id: str) -> None:
        """Fail a job on operator request; ``retry_job`` resumes it."""
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        await self._store.fail_job(job_id, "Job paused by user")
        logger.info(f"Paused job {job_id}")

    async def remove_job(self, job_id: str) -> bool:
        return await self._store.remove_job(job_id)
