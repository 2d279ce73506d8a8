"""Workflow and pipeline definitions.

A definition is an ordered list of nodes, each naming a step type, its
configuration and the nodes it depends on. A pipeline is the degenerate
case where every node depends on exactly the node before it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class NodeDefinition:
    """One step node of a workflow."""

    id: str
    step_type: str
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NodeDefinition:
        return cls(
            id=raw["id"],
            step_type=raw.get("step_type", raw.get("stepType", raw.get("type"))),
            config=dict(raw.get("config") or {}),
            depends_on=tuple(raw.get("depends_on", raw.get("dependsOn")) or ()),
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    """A persisted workflow or pipeline definition.

    Immutable during a run. Node order is the definition order used to
    break ties between nodes that become ready at the same time.

    Example:
        definition = WorkflowDefinition.pipeline(
            "ingest",
            "Ingest segments",
            [("dedup", "duplicate_segment", {}), ("filter", "rule_based_filter", {})],
        )
    """

    id: str
    name: str
    nodes: tuple[NodeDefinition, ...]
    is_active: bool = True
    description: str | None = None

    @classmethod
    def pipeline(
        cls,
        definition_id: str,
        name: str,
        steps: list[tuple[str, str, dict[str, Any]]],
        is_active: bool = True,
    ) -> WorkflowDefinition:
        """Build a linear pipeline from ``(node_id, step_type, config)`` triples."""
        nodes = []
        previous: str | None = None
        for node_id, step_type, config in steps:
            depends_on = (previous,) if previous is not None else ()
            nodes.append(NodeDefinition(node_id, step_type, dict(config), depends_on))
            previous = node_id
        return cls(id=definition_id, name=name, nodes=tuple(nodes), is_active=is_active)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkflowDefinition:
        return cls(
            id=raw["id"],
            name=raw.get("name", raw["id"]),
            nodes=tuple(NodeDefinition.from_dict(n) for n in raw.get("nodes", [])),
            is_active=raw.get("is_active", raw.get("isActive", True)),
            description=raw.get("description"),
        )

    @property
    def is_pipeline(self) -> bool:
        """True when the nodes form a strict chain in definition order."""
        for index, node in enumerate(self.nodes):
            expected = (self.nodes[index - 1].id,) if index > 0 else ()
            if node.depends_on != expected:
                return False
        return True

    @property
    def step_types(self) -> set[str]:
        return {node.step_type for node in self.nodes}

    def node(self, node_id: str) -> NodeDefinition:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)
