"""Core data models for job queueing and workflow execution.

Defines jobs and their options, workflow definitions, execution records
and cached node outputs.

Design: Dependency-Free Models
These types have no dependencies on storage or executor modules to
prevent circular imports and enable clean layering.
"""

from pyconveyor.models.definition import NodeDefinition, WorkflowDefinition
from pyconveyor.models.execution import (
    Execution,
    ExecutionMetrics,
    IllegalTransitionError,
    NodeMetrics,
    NodeOutput,
)
from pyconveyor.models.job import Job, JobDetails, JobOptions, utcnow
from pyconveyor.models.retry import (
    Backoff,
    BackoffType,
    NonRetryableError,
    RetryableError,
    is_retryable,
)
from pyconveyor.models.status import ExecutionStatus, JobState

__all__ = [
    "Backoff",
    "BackoffType",
    "Execution",
    "ExecutionMetrics",
    "ExecutionStatus",
    "IllegalTransitionError",
    "Job",
    "JobDetails",
    "JobOptions",
    "JobState",
    "NodeDefinition",
    "NodeMetrics",
    "NodeOutput",
    "NonRetryableError",
    "RetryableError",
    "WorkflowDefinition",
    "is_retryable",
    "utcnow",
]
