"""Execution records and cached node outputs.

An Execution is one attempt at running a definition over an item batch.
Its status only moves forward; ``transition_to`` rejects anything else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pyconveyor.models.job import utcnow
from pyconveyor.models.status import ExecutionStatus


class IllegalTransitionError(Exception):
    """Attempted an execution status change that is not allowed."""

    def __init__(self, execution_id: str, current: ExecutionStatus, target: ExecutionStatus):
        super().__init__(f"Execution {execution_id}: illegal transition {current} -> {target}")
        self.execution_id = execution_id
        self.current = current
        self.target = target


@dataclass
class NodeMetrics:
    """Per-node bookkeeping recorded by the executor."""

    node_id: str
    step_type: str
    input_count: int = 0
    output_count: int = 0
    duration_ms: float = 0.0
    cached: bool = False
    step_metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "stepType": self.step_type,
            "inputCount": self.input_count,
            "outputCount": self.output_count,
            "durationMs": self.duration_ms,
            "cached": self.cached,
            "stepMetrics": dict(self.step_metrics),
        }


@dataclass
class ExecutionMetrics:
    nodes_processed: int = 0
    items_processed: int = 0
    total_duration_ms: float = 0.0
    nodes: dict[str, NodeMetrics] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodesProcessed": self.nodes_processed,
            "itemsProcessed": self.items_processed,
            "totalDuration": self.total_duration_ms,
            "nodes": {node_id: m.to_dict() for node_id, m in self.nodes.items()},
        }


@dataclass
class Execution:
    """One run of a workflow/pipeline definition.

    Re-running the same execution id creates a new attempt record with its
    own trajectory; ``attempt`` tells them apart.
    """

    id: str
    definition_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    attempt: int = 1
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    output: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    """Correlation fields (document_id, dataset_id, user_id) of the run."""

    history: list[ExecutionStatus] = field(default_factory=list)
    """Every status this attempt has held, in order."""

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.status)

    def transition_to(self, target: ExecutionStatus) -> None:
        """
        Move to ``target`` status.

        Stamps ``started_at`` on RUNNING and ``completed_at`` on terminal
        statuses.

        Raises:
            IllegalTransitionError: If the transition would regress or skip RUNNING
        """
        if not self.status.can_transition_to(target):
            raise IllegalTransitionError(self.id, self.status, target)
        self.status = target
        self.history.append(target)
        now = utcnow()
        if target == ExecutionStatus.RUNNING:
            self.started_at = now
        elif target.is_terminal:
            self.completed_at = now

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "definitionId": self.definition_id,
            "status": self.status.value,
            "attempt": self.attempt,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "metrics": self.metrics.to_dict(),
        }


@dataclass(frozen=True)
class NodeOutput:
    """A memoized node result.

    Key is ``(execution_id, node_id, fingerprint)``; fingerprint may be None.
    """

    execution_id: str
    node_id: str
    payload: Any
    fingerprint: str | None = None
    computed_at: datetime = field(default_factory=utcnow)
