"""Step capability: the polymorphic unit a workflow node runs.

A step receives the node's input items and a context, and returns the
output items plus free-form metrics. Steps must be idempotent for a given
input and must not mutate the items they receive; cached outputs are
shared between runs. Rejecting an individual item is expressed by leaving
it out of (or annotating it in) the output, not by raising.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

Item = dict[str, Any]


@dataclass(frozen=True)
class StepContext:
    """Per-node execution context handed to ``Step.execute``."""

    execution_id: str
    definition_id: str
    node_id: str
    config: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    document_id: str | None = None
    dataset_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepResult:
    items: list[Item]
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepMetadata:
    type: str
    name: str
    description: str
    version: str

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "version": self.version,
        }


class Step(ABC):
    """Base class for step implementations.

    Example:
        ```python
        class UppercaseStep(Step):
            step_type = "uppercase"
            name = "Uppercase"

            async def execute(self, items, context):
                out = [{**item, "content": item["content"].upper()} for item in items]
                return StepResult(items=out, metrics={"changed": len(out)})
        ```
    """

    step_type: str = ""
    name: str = ""
    description: str = ""
    version: str = "1.0.0"

    @abstractmethod
    async def execute(self, items: list[Item], context: StepContext) -> StepResult:
        """Transform ``items``; raise only for unrecoverable failures."""
        pass

    def validate(self, config: dict[str, Any]) -> list[str]:
        """Return configuration problems; an empty list means valid."""
        return []

    @property
    def metadata(self) -> StepMetadata:
        return StepMetadata(
            type=self.step_type,
            name=self.name or type(self).__name__,
            description=self.description,
            version=self.version,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(step_type={self.step_type!r})"


def item_text(item: Item, field_name: str = "content") -> str:
    """Return the text of ``item`` at a dotted ``field_name`` path ('' when absent)."""
    value: Any = item
    for part in field_name.split("."):
        if not isinstance(value, dict):
            return ""
        value = value.get(part)
    return value if isinstance(value, str) else ("" if value is None else str(value))
