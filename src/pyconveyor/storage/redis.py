"""Redis-based job store implementation.

Provides a Redis backend for the job queue so the queue survives process
restarts and can be inspected from other processes.

Data Structures:
- pyconveyor:job:{job_id} (STRING): pickled Job record
- pyconveyor:state:{state} (ZSET): job ids per state
    waiting   score = priority * 1e12 + sequence (claim order)
    delayed   score = available_at (ms)
    active    score = processed_at (ms)
    completed score = finished_at (ms)
    failed    score = finished_at (ms)
- pyconveyor:seq (STRING): insertion counter for FIFO ordering

Key Features:
- Atomic claim: ZPOPMIN on the waiting set hands each job to one worker
- MULTI/EXEC pipelines keep the job record and state index consistent

Design: Adapter Pattern
Implements JobStore for Redis, adapting a key-value store to the queue
interface.
"""

from __future__ import annotations

import asyncio
import pickle
from collections.abc import Iterable
from datetime import datetime, timedelta

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisJobStore. Install with: pip install redis")

from pyconveyor.models import Job, JobState, utcnow
from pyconveyor.storage.base import JobStore, StorageError, reference_time

_PRIORITY_SPAN = 1_000_000_000_000


class RedisJobStore(JobStore):
    """Redis job queue using connection pooling.

    Usage:
        store = RedisJobStore("redis://localhost:6379")
        await store.connect()

        await store.add_job(job)
        claimed = await store.claim_next("worker-1")
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        prefix: str = "pyconveyor",
    ):
        """Initialize the Redis job store.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            prefix: Namespace for every key this store writes
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._prefix = prefix
        self._redis: redis.Redis | None = None
        self._claim_lock = asyncio.Lock()
        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return f"RedisJobStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish the Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,
            max_connections=self._max_connections,
        )
        try:
            await self._redis.ping()
        except redis.RedisError as e:
            raise StorageError(f"Redis unreachable at {self._redis_url}: {e}") from e

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _state_key(self, state: JobState) -> str:
        return f"{self._prefix}:state:{state.value}"

    @staticmethod
    def _score(job: Job) -> float:
        if job.state == JobState.WAITING:
            return job.options.priority * _PRIORITY_SPAN + job.sequence
        if job.state == JobState.DELAYED:
            return (job.available_at or job.created_at).timestamp() * 1000
        return reference_time(job).timestamp() * 1000

    async def _load(self, job_id: str | bytes) -> Job | None:
        if isinstance(job_id, bytes):
            job_id = job_id.decode()
        raw = await self._redis.get(self._job_key(job_id))
        return pickle.loads(raw) if raw is not None else None

    async def _save(self, job: Job, previous: JobState | None = None) -> None:
        """Write the record and move its id to the right state index atomically."""
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.set(self._job_key(job.id), pickle.dumps(job))
            if previous is not None and previous != job.state:
                await pipe.zrem(self._state_key(previous), job.id)
            await pipe.zadd(self._state_key(job.state), {job.id: self._score(job)})
            await pipe.execute()

    async def _require(self, job_id: str) -> Job:
        job = await self._load(job_id)
        if job is None:
            raise StorageError(f"Job not found: job_id={job_id}")
        return job

    async def add_job(self, job: Job) -> str:
        self._check_connected()
        try:
            sequence = await self._redis.incr(f"{self._prefix}:seq")
            await self._save(job.evolve(state=JobState.WAITING, sequence=sequence))
        except redis.RedisError as e:
            raise StorageError(f"Failed to add job {job.id}: {e}") from e
        self._work_notify.set()
        return job.id

    async def _promote_delayed(self) -> None:
        now_ms = utcnow().timestamp() * 1000
        due = await self._redis.zrangebyscore(self._state_key(JobState.DELAYED), "-inf", now_ms)
        for job_id in due:
            job = await self._load(job_id)
            if job is None:
                await self._redis.zrem(self._state_key(JobState.DELAYED), job_id)
                continue
            await self._save(
                job.evolve(state=JobState.WAITING, available_at=None), JobState.DELAYED
            )

    async def claim_next(self, worker_id: str) -> Job | None:
        self._check_connected()
        async with self._claim_lock:
            await self._promote_delayed()

            popped = await self._redis.zpopmin(self._state_key(JobState.WAITING))
            if not popped:
                return None

            job = await self._load(popped[0][0])
            if job is None:
                return None

            claimed = job.evolve(
                state=JobState.ACTIVE,
                attempts_made=job.attempts_made + 1,
                processed_at=utcnow(),
                locked_by=worker_id,
            )
            await self._save(claimed)

            if await self._redis.zcard(self._state_key(JobState.WAITING)) > 0:
                self._work_notify.set()
            return claimed

    async def complete_job(self, job_id: str) -> None:
        self._check_connected()
        job = await self._require(job_id)
        await self._save(
            job.evolve(
                state=JobState.COMPLETED, finished_at=utcnow(), progress=100, locked_by=None
            ),
            job.state,
        )

    async def fail_job(self, job_id: str, error_message: str) -> None:
        self._check_connected()
        job = await self._require(job_id)
        await self._save(
            job.evolve(
                state=JobState.FAILED,
                finished_at=utcnow(),
                failed_reason=error_message,
                locked_by=None,
            ),
            job.state,
        )

    async def retry_job(self, job_id: str, error_message: str, delay: timedelta) -> None:
        self._check_connected()
        job = await self._require(job_id)
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
        await self._save(updated, job.state)
        self._work_notify.set()

    async def requeue_job(self, job_id: str) -> bool:
        self._check_connected()
        job = await self._load(job_id)
        if job is None or job.state != JobState.FAILED:
            return False
        sequence = await self._redis.incr(f"{self._prefix}:seq")
        await self._save(
            job.evolve(
                state=JobState.WAITING, attempts_made=0, finished_at=None, sequence=sequence
            ),
            JobState.FAILED,
        )
        self._work_notify.set()
        return True

    async def update_progress(self, job_id: str, progress: int) -> None:
        self._check_connected()
        job = await self._require(job_id)
        await self._save(job.evolve(progress=max(0, min(100, progress))))

    async def get_job(self, job_id: str) -> Job | None:
        self._check_connected()
        return await self._load(job_id)

    async def get_jobs(self, states: Iterable[JobState] | None = None) -> list[Job]:
        self._check_connected()
        jobs: list[Job] = []
        for state in states if states is not None else JobState:
            for job_id in await self._redis.zrange(self._state_key(state), 0, -1):
                job = await self._load(job_id)
                if job is not None:
                    jobs.append(job)
        return sorted(jobs, key=lambda j: (j.created_at, j.sequence))

    async def count_jobs(self) -> dict[JobState, int]:
        self._check_connected()
        return {state: await self._redis.zcard(self._state_key(state)) for state in JobState}

    async def remove_job(self, job_id: str) -> bool:
        self._check_connected()
        job = await self._load(job_id)
        if job is None:
            return False
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.delete(self._job_key(job_id))
            await pipe.zrem(self._state_key(job.state), job_id)
            await pipe.execute()
        return True

    async def clean(self, state: JobState, older_than: datetime | None = None) -> list[str]:
        self._check_connected()
        removed: list[str] = []
        for raw_id in await self._redis.zrange(self._state_key(state), 0, -1):
            job = await self._load(raw_id)
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            if job is None:
                await self._redis.zrem(self._state_key(state), raw_id)
                continue
            if older_than is None or reference_time(job) < older_than:
                if await self.remove_job(job_id):
                    removed.append(job_id)
        return removed

    async def trim(self, state: JobState, keep: int) -> int:
        self._check_connected()
        # Highest score = most recently finished; keep the top ``keep`` entries.
        stale = await self._redis.zrevrange(self._state_key(state), max(keep, 0), -1)
        count = 0
        for raw_id in stale:
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            if await self.remove_job(job_id):
                count += 1
        return count

    async def reset(self) -> None:
        self._check_connected()
        keys = [key async for key in self._redis.scan_iter(match=f"{self._prefix}:*")]
        if keys:
            await self._redis.delete(*keys)

    def work_notify(self) -> asyncio.Event:
        return self._work_notify
