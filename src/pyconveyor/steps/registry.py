"""Step registry: step-type string to step instance.

Populated once during bootstrap and read-only afterwards. Registering a
type twice replaces the first instance and logs a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from pyconveyor.models import NonRetryableError, WorkflowDefinition
from pyconveyor.steps.base import Step, StepMetadata

logger = logging.getLogger(__name__)


class StepNotFoundError(NonRetryableError):
    """No step is registered for a step type."""

    def __init__(self, step_type: str):
        super().__init__(f"No step registered for type: {step_type}")
        self.step_type = step_type


class UnregisteredStepTypesError(NonRetryableError):
    """Stored definitions reference step types that are not registered."""

    def __init__(self, missing: dict[str, list[str]]):
        details = ", ".join(f"{d}: {sorted(types)}" for d, types in sorted(missing.items()))
        super().__init__(f"Definitions reference unregistered step types ({details})")
        self.missing = missing


class StepRegistry:
    """Maps step types to step instances.

    Example:
        ```python
        registry = StepRegistry()
        registry.register_step(DuplicateSegmentStep())
        step = registry.get_step("duplicate_segment")
        ```
    """

    def __init__(self, steps: Iterable[Step] = ()):
        self._steps: dict[str, Step] = {}
        for step in steps:
            self.register_step(step)

    def register_step(self, step: Step) -> None:
        """Register ``step`` under its ``step_type`` (last registration wins).

        Raises:
            ValueError: If the step declares no step_type
        """
        if not step.step_type:
            raise ValueError(f"{type(step).__name__} does not declare a step_type")
        existing = self._steps.get(step.step_type)
        if existing is not None and existing is not step:
            logger.warning(
                f"Step type {step.step_type!r} re-registered: "
                f"{type(existing).__name__} replaced by {type(step).__name__}"
            )
        self._steps[step.step_type] = step
        logger.debug(f"Registered step type: {step.step_type}")

    def get_step(self, step_type: str) -> Step:
        """
        Resolve a step by type.

        Raises:
            StepNotFoundError: If the type is not registered
        """
        step = self._steps.get(step_type)
        if step is None:
            raise StepNotFoundError(step_type)
        return step

    def create_step_instance(self, step_type: str) -> Step:
        """Return the instance registered for ``step_type``."""
        return self.get_step(step_type)

    def has_step(self, step_type: str) -> bool:
        return step_type in self._steps

    def get_all_steps(self) -> list[StepMetadata]:
        return [step.metadata for step in self._steps.values()]

    def get_step_types(self) -> list[str]:
        return list(self._steps)

    def validate_definitions(self, definitions: Iterable[WorkflowDefinition]) -> None:
        """
        Assert every step type referenced by ``definitions`` is registered.

        Raises:
            UnregisteredStepTypesError: Listing each definition's missing types
        """
        missing: dict[str, list[str]] = {}
        for definition in definitions:
            unknown = sorted(t for t in definition.step_types if t not in self._steps)
            if unknown:
                missing[definition.id] = unknown
        if missing:
            raise UnregisteredStepTypesError(missing)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_type: object) -> bool:
        return step_type in self._steps

    def is_empty(self) -> bool:
        return len(self._steps) == 0
