"""Status enumerations for queue jobs and workflow executions.

Defines the lifecycle states of a queued job and of a single
pipeline/workflow execution, including the legal execution transitions.
"""

from enum import Enum


class JobState(Enum):
    """State of a job in the queue.

    Lifecycle:
        WAITING → ACTIVE → COMPLETED
        WAITING → ACTIVE → DELAYED → WAITING → ...  (retry with backoff)
        WAITING → ACTIVE → FAILED  (attempts exhausted or non-retryable)
    """

    WAITING = "waiting"
    """Job is queued, waiting for a worker to claim it."""

    ACTIVE = "active"
    """Job is currently being handled by a worker."""

    COMPLETED = "completed"
    """Handler returned normally."""

    FAILED = "failed"
    """Handler failed and no attempts remain."""

    DELAYED = "delayed"
    """Job failed and waits for its backoff interval before re-entering WAITING."""

    @property
    def is_terminal(self) -> bool:
        """Check if this state is terminal (no more work will happen)."""
        return self in (JobState.COMPLETED, JobState.FAILED)

    @property
    def is_cancellable(self) -> bool:
        """Check if a job in this state may still be removed by cancellation."""
        return self in (JobState.WAITING, JobState.ACTIVE, JobState.DELAYED)

    def __str__(self) -> str:
        return self.value


class ExecutionStatus(Enum):
    """Status of one pipeline/workflow execution attempt.

    Lifecycle:
        PENDING → RUNNING → COMPLETED | FAILED | CANCELLED

    Status never regresses and never skips RUNNING.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal."""
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    def can_transition_to(self, target: "ExecutionStatus") -> bool:
        """Check whether moving from this status to ``target`` is legal."""
        return target in _EXECUTION_TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}
