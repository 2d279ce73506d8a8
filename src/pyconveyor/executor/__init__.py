"""Workflow/pipeline DAG executor."""

from pyconveyor.executor.graph import (
    CycleError,
    DefinitionError,
    build_graph,
    execution_levels,
    topological_order,
)
from pyconveyor.executor.workflow import (
    DefinitionInactiveError,
    DefinitionNotFoundError,
    ExecutionAlreadyRunningError,
    ExecutionFailedError,
    ExecutionOptions,
    WorkflowExecutor,
)

__all__ = [
    "CycleError",
    "DefinitionError",
    "DefinitionInactiveError",
    "DefinitionNotFoundError",
    "ExecutionAlreadyRunningError",
    "ExecutionFailedError",
    "ExecutionOptions",
    "WorkflowExecutor",
    "build_graph",
    "execution_levels",
    "topological_order",
]
