"""Job handlers, the job type registry and the auto-loader."""

from pyconveyor.jobs.base import BaseJob
from pyconveyor.jobs.container import Container, ResolutionError
from pyconveyor.jobs.loader import JobAutoLoader, LoadReport
from pyconveyor.jobs.registry import HandlerNotFoundError, JobRegistry
from pyconveyor.jobs.workflow import InvalidJobDataError, WorkflowJob

__all__ = [
    "BaseJob",
    "Container",
    "HandlerNotFoundError",
    "InvalidJobDataError",
    "JobAutoLoader",
    "JobRegistry",
    "LoadReport",
    "ResolutionError",
    "WorkflowJob",
]
