"""Queued job model.

A Job is the unit of work in the queue: a type string used to resolve the
handler, an arbitrary payload and the options that control retries,
timeouts and ordering.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from pyconveyor.models.retry import Backoff
from pyconveyor.models.status import JobState


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class JobOptions:
    """Per-job dispatch options.

    Design: Value Object
        Options are fixed at dispatch time and travel with the job.
    """

    attempts: int = 3
    """Maximum number of handler invocations, including the first."""

    backoff: Backoff | None = None
    """Delay policy between attempts; None retries immediately."""

    timeout_ms: int | None = None
    """Handler time limit in milliseconds; None means no limit."""

    priority: int = 0
    """Lower values are claimed first; equal priorities are FIFO."""

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> JobOptions:
        """Build options from the wire shape used by ``dispatch``.

        Accepts ``attempts``, ``backoff`` (``{"type", "delay"}``),
        ``timeout``/``timeout_ms`` and ``priority``.
        """
        if not raw:
            return cls()
        backoff = raw.get("backoff")
        if isinstance(backoff, dict):
            backoff = Backoff.from_dict(backoff)
        timeout = raw.get("timeout_ms", raw.get("timeout"))
        return cls(
            attempts=int(raw.get("attempts", 3)),
            backoff=backoff,
            timeout_ms=int(timeout) if timeout is not None else None,
            priority=int(raw.get("priority", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict() if self.backoff else None,
            "timeout": self.timeout_ms,
            "priority": self.priority,
        }


@dataclass
class Job:
    """A typed unit of queued asynchronous work.

    Workers claim Jobs, resolve a handler by ``type`` and move the job
    through its states. ``attempts_made`` is incremented every time the job
    is claimed, so it equals the number of handler invocations started.
    """

    id: str
    """Unique job identifier (UUIDv7 string)."""

    type: str
    """Job type used to resolve the handler."""

    data: dict[str, Any]
    """Handler payload."""

    options: JobOptions = field(default_factory=JobOptions)

    state: JobState = JobState.WAITING

    attempts_made: int = 0

    progress: int = 0
    """Handler-reported progress percentage (0-100)."""

    created_at: datetime = field(default_factory=utcnow)

    processed_at: datetime | None = None
    """When the job was last claimed by a worker."""

    finished_at: datetime | None = None
    """When the job reached COMPLETED or FAILED."""

    failed_reason: str | None = None
    """Error message of the last failed attempt."""

    available_at: datetime | None = None
    """When a DELAYED job becomes eligible to run again."""

    locked_by: str | None = None
    """Worker that claimed the job."""

    sequence: int = 0
    """Monotonic insertion counter used for FIFO ordering."""

    @property
    def has_attempts_remaining(self) -> bool:
        return self.attempts_made < self.options.attempts

    def correlates_with(self, field_name: str, value: Any) -> bool:
        """Check whether ``data[field_name]`` or ``data["data"][field_name]`` equals value."""
        if self.data.get(field_name) == value:
            return True
        nested = self.data.get("data")
        return isinstance(nested, dict) and nested.get(field_name) == value

    def evolve(self, **changes: Any) -> Job:
        """Return a copy of this job with ``changes`` applied."""
        return replace(self, **changes)


@dataclass(frozen=True)
class JobDetails:
    """Read-only view of a job for introspection callers."""

    id: str
    type: str
    data: dict[str, Any]
    status: JobState
    progress: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failed_reason: str | None
    attempts_made: int
    attempts_limit: int

    @classmethod
    def from_job(cls, job: Job) -> JobDetails:
        return cls(
            id=job.id,
            type=job.type,
            data=job.data,
            status=job.state,
            progress=job.progress,
            created_at=job.created_at,
            started_at=job.processed_at,
            completed_at=job.finished_at,
            failed_reason=job.failed_reason,
            attempts_made=job.attempts_made,
            attempts_limit=job.options.attempts,
        )
