"""Job queue: dispatching, workers, outcome handling, management and cleanup."""

from pyconveyor.dispatch.cleanup import QueueCleaner
from pyconveyor.dispatch.dispatcher import DispatchError, Dispatcher
from pyconveyor.dispatch.execution import (
    check_should_retry,
    handle_job_completion,
    handle_job_error,
)
from pyconveyor.dispatch.manager import JobNotFoundError, QueueManager
from pyconveyor.dispatch.worker import JobTimeoutError, Worker, WorkerError, WorkerHandle

__all__ = [
    "DispatchError",
    "Dispatcher",
    "JobNotFoundError",
    "JobTimeoutError",
    "QueueCleaner",
    "QueueManager",
    "Worker",
    "WorkerError",
    "WorkerHandle",
    "check_should_retry",
    "handle_job_completion",
    "handle_job_error",
]
