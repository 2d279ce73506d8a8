"""
Conveyor: job queue and workflow orchestration for Python

A durable job queue with retries, a DAG/pipeline executor with per-node
output caching, a synchronous event bus and client notification fan-out.

Design Pattern: Façade Pattern
This module re-exports the pieces most applications need, hiding the
package layout of storage, execution and dispatching.

Example:
    ```python
    import asyncio
    from pyconveyor import QueueSettings, WorkflowDefinition, bootstrap

    async def main():
        runtime = await bootstrap(QueueSettings.from_env())
        await runtime.execution_store.save_definition(
            WorkflowDefinition.pipeline(
                "ingest",
                "Segment ingest",
                [
                    ("dedup", "duplicate_segment", {"method": "hash"}),
                    ("filter", "rule_based_filter", {"min_tokens": 3}),
                ],
            )
        )

        handle = await runtime.worker("worker-1").start()
        await runtime.dispatcher.dispatch(
            "workflow", {"definitionId": "ingest", "items": [{"content": "..."}]}
        )
        ...
        await handle.shutdown()
        await runtime.close()

    asyncio.run(main())
    ```
"""

from pyconveyor.bootstrap import Runtime, bootstrap
from pyconveyor.cache import InMemoryNodeOutputCache, NodeOutputCache
from pyconveyor.config import QueueSettings
from pyconveyor.dispatch import (
    DispatchError,
    Dispatcher,
    QueueCleaner,
    QueueManager,
    Worker,
    WorkerError,
    WorkerHandle,
)
from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.executor import (
    CycleError,
    DefinitionError,
    DefinitionInactiveError,
    DefinitionNotFoundError,
    ExecutionFailedError,
    ExecutionOptions,
    WorkflowExecutor,
)
from pyconveyor.jobs import (
    BaseJob,
    Container,
    HandlerNotFoundError,
    JobAutoLoader,
    JobRegistry,
    WorkflowJob,
)
from pyconveyor.models import (
    Backoff,
    BackoffType,
    Execution,
    ExecutionStatus,
    IllegalTransitionError,
    Job,
    JobDetails,
    JobOptions,
    JobState,
    NodeDefinition,
    NonRetryableError,
    RetryableError,
    WorkflowDefinition,
)
from pyconveyor.notifications import (
    NotificationFanout,
    NotificationRelay,
    NotificationType,
)
from pyconveyor.steps import Step, StepContext, StepNotFoundError, StepRegistry, StepResult
from pyconveyor.storage import (
    ExecutionStore,
    InMemoryExecutionStore,
    InMemoryJobStore,
    JobStore,
    StorageError,
)

__version__ = "0.1.0"

__all__ = [
    "Backoff",
    "BackoffType",
    "BaseJob",
    "Container",
    "CycleError",
    "DefinitionError",
    "DefinitionInactiveError",
    "DefinitionNotFoundError",
    "DispatchError",
    "Dispatcher",
    "Event",
    "EventBus",
    "EventType",
    "Execution",
    "ExecutionFailedError",
    "ExecutionOptions",
    "ExecutionStatus",
    "ExecutionStore",
    "HandlerNotFoundError",
    "IllegalTransitionError",
    "InMemoryExecutionStore",
    "InMemoryJobStore",
    "InMemoryNodeOutputCache",
    "Job",
    "JobAutoLoader",
    "JobDetails",
    "JobOptions",
    "JobRegistry",
    "JobState",
    "JobStore",
    "NodeDefinition",
    "NodeOutputCache",
    "NonRetryableError",
    "NotificationFanout",
    "NotificationRelay",
    "NotificationType",
    "QueueCleaner",
    "QueueManager",
    "QueueSettings",
    "RetryableError",
    "Runtime",
    "Step",
    "StepContext",
    "StepNotFoundError",
    "StepRegistry",
    "StepResult",
    "StorageError",
    "Worker",
    "WorkerError",
    "WorkerHandle",
    "WorkflowDefinition",
    "WorkflowExecutor",
    "WorkflowJob",
    "bootstrap",
    "__version__",
]
