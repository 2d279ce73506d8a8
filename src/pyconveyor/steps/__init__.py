"""Step capability, step registry and reference steps."""

from pyconveyor.steps.base import Item, Step, StepContext, StepMetadata, StepResult
from pyconveyor.steps.dedup import DuplicateSegmentStep
from pyconveyor.steps.registry import StepNotFoundError, StepRegistry, UnregisteredStepTypesError
from pyconveyor.steps.rule_filter import RuleBasedFilterStep

__all__ = [
    "DuplicateSegmentStep",
    "Item",
    "RuleBasedFilterStep",
    "Step",
    "StepContext",
    "StepMetadata",
    "StepNotFoundError",
    "StepRegistry",
    "StepResult",
    "UnregisteredStepTypesError",
]
