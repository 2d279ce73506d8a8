"""Queue worker: claims jobs and runs their handlers.

A background task claims jobs from the store and hands them to the main
loop through a bounded queue; the main loop runs each job as its own
asyncio task. A semaphore permit is taken before claiming and released
when the job's task ends, which bounds the number of jobs in flight.

Features:
- Event-driven claiming via the store's work notification, with polling fallback
- Per-job timeout from ``JobOptions.timeout_ms``
- Retry with fixed or exponential backoff (see ``execution``)
- Graceful shutdown that waits for running jobs
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from pyconveyor.config import QueueSettings
from pyconveyor.dispatch.execution import (
    error_message,
    handle_job_completion,
    handle_job_error,
)
from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.jobs.registry import HandlerNotFoundError, JobRegistry
from pyconveyor.models import Job, RetryableError
from pyconveyor.storage.base import JobStore, WorkNotificationSource

logger = logging.getLogger(__name__)


class JobTimeoutError(RetryableError):
    def __init__(self, job_id: str, timeout_ms: int):
        super().__init__(f"Job {job_id} timed out after {timeout_ms}ms")
        self.job_id = job_id
        self.timeout_ms = timeout_ms


class Worker:
    """Worker that claims and executes jobs from the queue.

    Design Patterns:
    - Template Method: _run() defines the fixed loop skeleton
    - Strategy: job handlers are interchangeable strategies
    - Builder: with_poll_interval(), with_concurrency() for configuration

    Usage:
        store = SqliteJobStore("queue.db")
        await store.connect()

        worker = Worker(store, registry, bus, "worker-1") \\
            .with_concurrency(8) \\
            .with_poll_interval(0.5)

        handle = await worker.start()

        # ... let it run ...

        await handle.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        registry: JobRegistry,
        bus: EventBus,
        worker_id: str,
        settings: QueueSettings | None = None,
    ):
        self._store = store
        self._registry = registry
        self._bus = bus
        self._worker_id = worker_id
        self._settings = settings or QueueSettings()

        self._poll_interval = 1.0
        self._poll_interval_with_jitter = self._jittered(self._poll_interval)
        self._concurrency = max(1, self._settings.worker_concurrency)
        self._permits = asyncio.Semaphore(self._concurrency)

        self._shutdown_event = asyncio.Event()
        self._running = False

        # Keep references so running job tasks are not garbage collected
        self._background_tasks: set[asyncio.Task] = set()

        # Bounded to 1: the next claim happens only after the main loop took the last job
        self._dequeue_queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=1)
        self._dequeue_task: asyncio.Task | None = None

        self._supports_work_notifications = isinstance(store, WorkNotificationSource)
        if self._supports_work_notifications:
            self._work_notify = store.work_notify()
            logger.debug(f"Worker {worker_id}: Event-driven work notifications enabled")
        else:
            self._work_notify = None
            logger.debug(f"Worker {worker_id}: Polling-based work detection (no notifications)")

    def _jittered(self, interval: float) -> float:
        # Spread workers sharing a store so they do not poll in lockstep
        worker_hash = sum(ord(c) for c in self._worker_id)
        jitter_ms = 1 + (worker_hash % 5)
        return interval + (jitter_ms / 1000.0)

    def with_poll_interval(self, interval: float) -> "Worker":
        """Configure the fallback polling interval in seconds (builder pattern).

        Also bounds how late a DELAYED job is picked up after its backoff.

        Returns:
            self for method chaining
        """
        self._poll_interval = interval
        self._poll_interval_with_jitter = self._jittered(interval)
        return self

    def with_concurrency(self, max_concurrent: int) -> "Worker":
        """Limit how many jobs run at the same time (builder pattern).

        The permit is acquired before claiming, so a saturated worker does
        not take jobs it cannot start.

        Raises:
            ValueError: If max_concurrent is below 1
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        if self._running:
            raise WorkerError("Concurrency cannot change while the worker is running")
        self._concurrency = max_concurrent
        self._permits = asyncio.Semaphore(max_concurrent)
        return self

    @property
    def concurrency(self) -> int:
        return self._concurrency

    async def start(self) -> "WorkerHandle":
        """Start the worker main loop.

        Returns a WorkerHandle immediately; the loop runs until
        ``handle.shutdown()`` or ``handle.abort()``.

        Raises:
            WorkerError: If the worker is already running
        """
        if self._running:
            raise WorkerError(f"Worker {self._worker_id} is already running")
        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def _background_dequeue_loop(self) -> None:
        """Claim jobs and feed them to the main loop.

        Backpressure:
        1. Acquire a permit BEFORE querying the store
        2. Claim a job
        3. Hand it to the main loop; the permit now belongs to the job's task

        Runs until cancelled.
        """
        while self._running and not self._shutdown_event.is_set():
            holding_permit = False
            try:
                await self._permits.acquire()
                holding_permit = True

                job = await self._store.claim_next(self._worker_id)

                if job is not None:
                    try:
                        await self._dequeue_queue.put(job)
                    except asyncio.CancelledError:
                        await self._release_unstarted(job)
                        holding_permit = False
                        raise
                    holding_permit = False
                    continue

                self._permits.release()
                holding_permit = False

                if self._supports_work_notifications:
                    try:
                        await asyncio.wait_for(
                            self._work_notify.wait(),
                            timeout=self._poll_interval_with_jitter,
                        )
                        self._work_notify.clear()
                    except TimeoutError:
                        pass
                else:
                    await asyncio.sleep(self._poll_interval_with_jitter)

            except asyncio.CancelledError:
                if holding_permit:
                    self._permits.release()
                raise
            except Exception as e:
                if holding_permit:
                    self._permits.release()
                logger.error(f"Worker {self._worker_id} background dequeue error: {e}")
                await asyncio.sleep(0.1)

    async def _run(self) -> None:
        """Main worker loop using asyncio.wait with FIRST_COMPLETED.

        Waits on the shutdown signal and the dequeue queue; each claimed job
        becomes a background task.
        """
        logger.info(f"Worker {self._worker_id} started (concurrency={self._concurrency})")

        self._dequeue_task = asyncio.create_task(self._background_dequeue_loop())

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    pending_tasks = {
                        "shutdown": asyncio.create_task(self._shutdown_event.wait()),
                        "dequeue": asyncio.create_task(self._dequeue_queue.get()),
                    }

                    done, pending = await asyncio.wait(
                        pending_tasks.values(),
                        return_when=asyncio.FIRST_COMPLETED,
                    )

                    for task in pending:
                        task.cancel()
                        try:
                            await task
                        except asyncio.CancelledError:
                            pass

                    dequeue_task = pending_tasks["dequeue"]
                    if dequeue_task in done:
                        try:
                            job = dequeue_task.result()
                        except Exception as task_error:
                            logger.error(
                                f"Worker {self._worker_id}: dequeue failed: {task_error}"
                            )
                            continue
                        self._dequeue_queue.task_done()
                        self._spawn(job)

                except Exception as e:
                    logger.error(f"Worker {self._worker_id} error: {e}")

            logger.info(
                f"Worker {self._worker_id}: Exiting main loop "
                f"(running={self._running}, shutdown={self._shutdown_event.is_set()})"
            )
        finally:
            logger.info(f"Worker {self._worker_id} stopped")

    def _spawn(self, job: Job) -> None:
        task = asyncio.create_task(self._execute_job(job))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        logger.debug(f"Worker {self._worker_id} claimed job: job_id={job.id}, type={job.type}")

    async def _release_unstarted(self, job: Job) -> None:
        """Give back a claimed job that never started and free its permit."""
        self._permits.release()
        try:
            await self._store.retry_job(job.id, "worker stopped before start", timedelta(0))
        except Exception as e:
            logger.error(f"Worker {self._worker_id} failed to release job {job.id}: {e}")

    async def _invoke(self, handler: Any, job: Job) -> Any:
        if callable(getattr(handler, "handle", None)):
            call = handler.handle(job)
        else:
            call = handler.process(job.data)

        timeout_ms = job.options.timeout_ms
        if timeout_ms is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=timeout_ms / 1000.0)
        except TimeoutError as e:
            raise JobTimeoutError(job.id, timeout_ms) from e

    async def _job_removed(self, job: Job) -> bool:
        """True if ``job`` was removed (cancelled) while its handler ran."""
        try:
            current = await self._store.get_job(job.id)
        except Exception as e:
            logger.warning(f"Worker {self._worker_id} could not re-read job {job.id}: {e}")
            return False
        if current is None:
            logger.info(
                f"Worker {self._worker_id}: job {job.id} was removed while running, "
                "dropping its outcome"
            )
            return True
        return False

    def _publish(self, event: Event) -> None:
        try:
            self._bus.publish(event)
        except Exception as e:
            logger.error(f"Worker {self._worker_id}: subscriber of {event.type} failed: {e}")

    async def _execute_job(self, job: Job) -> None:
        """Resolve the handler, run it and record the outcome.

        The permit taken by the dequeue loop is released when this returns.
        Outcome handling is delegated to execution.handle_job_completion()
        and execution.handle_job_error().
        """
        try:
            self._publish(
                Event.queue(
                    EventType.QUEUE_JOB_STARTED,
                    job.id,
                    job.type,
                    {"attempt": job.attempts_made, "workerId": self._worker_id},
                )
            )

            try:
                handler = self._registry.get_job(job.type)
            except HandlerNotFoundError as e:
                logger.error(
                    f"Worker {self._worker_id}: {e}. Did you forget to register the handler?"
                )
                await handle_job_error(
                    self._store, self._bus, self._settings, self._worker_id, job, e
                )
                return

            try:
                await self._invoke(handler, job)
            except Exception as e:
                if await self._job_removed(job):
                    return
                await handle_job_error(
                    self._store, self._bus, self._settings, self._worker_id, job, e
                )
                return

            if await self._job_removed(job):
                return
            await handle_job_completion(
                self._store, self._bus, self._settings, self._worker_id, job
            )

        except Exception as e:
            logger.error(
                f"Worker {self._worker_id} unexpected error: "
                f"job_id={job.id}, error={error_message(e)}"
            )
        finally:
            self._permits.release()

    async def shutdown(self) -> None:
        """Gracefully shut down the worker.

        Stops claiming, returns a claimed-but-unstarted job to the queue and
        waits for running jobs to finish.
        """
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self._dequeue_task and not self._dequeue_task.done():
            self._dequeue_task.cancel()
            try:
                await self._dequeue_task
            except asyncio.CancelledError:
                pass

        while not self._dequeue_queue.empty():
            await self._release_unstarted(self._dequeue_queue.get_nowait())
            self._dequeue_queue.task_done()

        if self._background_tasks:
            logger.info(
                f"Worker {self._worker_id}: Waiting for {len(self._background_tasks)} "
                "running jobs to complete..."
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
            logger.info(f"Worker {self._worker_id}: All running jobs completed")


class WorkerHandle:
    """Handle for controlling a running worker.

    Composition - handle HAS-A worker, not IS-A worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker._worker_id

    def is_running(self) -> bool:
        """Return True if the worker task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shut down the worker and wait for the main task to finish."""
        await self._worker.shutdown()
        await self._task

        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Abort the worker immediately without waiting for running jobs.

        Jobs in flight stay ACTIVE until the cleaner purges them as stalled.
        Prefer shutdown() for normal termination.
        """
        self._worker._running = False
        self._task.cancel()
        if self._worker._dequeue_task is not None:
            self._worker._dequeue_task.cancel()
        for task in list(self._worker._background_tasks):
            task.cancel()


class WorkerError(Exception):
    """Worker operation failed."""

    pass
