"""Lifecycle event types and the immutable Event record."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Dotted event names published on the bus."""

    # Queue events
    QUEUE_JOB_ADDED = "queue.job.added"
    QUEUE_JOB_STARTED = "queue.job.started"
    QUEUE_JOB_COMPLETED = "queue.job.completed"
    QUEUE_JOB_FAILED = "queue.job.failed"
    QUEUE_JOB_RETRY = "queue.job.retry"

    # Pipeline events
    PIPELINE_EXECUTION_STARTED = "pipeline.execution.started"
    PIPELINE_EXECUTION_COMPLETED = "pipeline.execution.completed"
    PIPELINE_EXECUTION_FAILED = "pipeline.execution.failed"
    PIPELINE_EXECUTION_CANCELLED = "pipeline.execution.cancelled"
    PIPELINE_STEP_STARTED = "pipeline.step.started"
    PIPELINE_STEP_COMPLETED = "pipeline.step.completed"
    PIPELINE_STEP_FAILED = "pipeline.step.failed"

    # Document events
    DOCUMENT_PROCESSING_STARTED = "document.processing.started"
    DOCUMENT_PROCESSING_COMPLETED = "document.processing.completed"
    DOCUMENT_PROCESSING_FAILED = "document.processing.failed"

    # System events
    SYSTEM_ERROR = "system.error"
    SYSTEM_WARNING = "system.warning"
    SYSTEM_INFO = "system.info"

    def __str__(self) -> str:
        return self.value


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Event:
    """An immutable lifecycle event.

    Queue events carry ``{jobId, jobType, data, error}``; pipeline events
    carry ``{executionId, pipelineId, stepId, data, error, userId}``.
    """

    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_millis)
    """Milliseconds since the epoch."""

    @classmethod
    def queue(
        cls,
        event_type: EventType,
        job_id: str,
        job_type: str,
        data: Any = None,
        error: str | None = None,
    ) -> Event:
        payload: dict[str, Any] = {"jobId": job_id, "jobType": job_type, "data": data}
        if error is not None:
            payload["error"] = error
        return cls(type=event_type, payload=payload)

    @classmethod
    def pipeline(
        cls,
        event_type: EventType,
        execution_id: str,
        pipeline_id: str,
        step_id: str | None = None,
        data: Any = None,
        error: str | None = None,
        user_id: str | None = None,
    ) -> Event:
        payload: dict[str, Any] = {
            "executionId": execution_id,
            "pipelineId": pipeline_id,
            "data": data,
        }
        if step_id is not None:
            payload["stepId"] = step_id
        if error is not None:
            payload["error"] = error
        if user_id is not None:
            payload["userId"] = user_id
        return cls(type=event_type, payload=payload)
