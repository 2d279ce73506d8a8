"""Application wiring.

Bootstrap happens in two phases:

1. Construct: stores, cache, bus, fan-out, registries, executor, queue
   services. Nothing references anything that does not exist yet.
2. Wire: attach the notification relay to the bus, register steps, resolve
   and register job handlers, then check every stored definition against
   the step registry.

Registries and the bus live on the returned Runtime; there are no
module-level singletons.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from pyconveyor.cache import InMemoryNodeOutputCache, NodeOutputCache
from pyconveyor.config import QueueSettings
from pyconveyor.dispatch import Dispatcher, QueueCleaner, QueueManager, Worker
from pyconveyor.events import EventBus
from pyconveyor.executor import WorkflowExecutor
from pyconveyor.jobs import Container, JobAutoLoader, JobRegistry, LoadReport, WorkflowJob
from pyconveyor.notifications import NotificationFanout, NotificationRelay
from pyconveyor.steps import DuplicateSegmentStep, RuleBasedFilterStep, Step, StepRegistry
from pyconveyor.storage import (
    ExecutionStore,
    InMemoryExecutionStore,
    InMemoryJobStore,
    JobStore,
)

logger = logging.getLogger(__name__)

DEFAULT_JOB_CLASSES: tuple[type, ...] = (WorkflowJob,)


def default_steps() -> list[Step]:
    return [DuplicateSegmentStep(), RuleBasedFilterStep()]


@dataclass
class Runtime:
    """Every component of a running application, wired together."""

    settings: QueueSettings
    job_store: JobStore
    execution_store: ExecutionStore
    cache: NodeOutputCache
    bus: EventBus
    fanout: NotificationFanout
    relay: NotificationRelay
    steps: StepRegistry
    jobs: JobRegistry
    container: Container
    executor: WorkflowExecutor
    dispatcher: Dispatcher
    manager: QueueManager
    cleaner: QueueCleaner
    load_report: LoadReport = field(default_factory=LoadReport)

    def worker(self, worker_id: str) -> Worker:
        """Create a worker bound to this runtime's queue and registries."""
        return Worker(self.job_store, self.jobs, self.bus, worker_id, self.settings)

    async def close(self) -> None:
        await self.cleaner.stop()
        self.relay.detach(self.bus)
        await self.cache.close()
        await self.execution_store.close()
        await self.job_store.close()


async def bootstrap(
    settings: QueueSettings | None = None,
    *,
    job_store: JobStore | None = None,
    execution_store: ExecutionStore | None = None,
    cache: NodeOutputCache | None = None,
    steps: Iterable[Step] | None = None,
    job_classes: Iterable[type] | None = None,
) -> Runtime:
    """
    Build and wire a Runtime.

    Stores passed in must already be connected. Anything omitted gets an
    in-memory implementation.

    Args:
        settings: Queue settings; defaults to ``QueueSettings()``
        job_store: Queue storage
        execution_store: Definition and execution storage
        cache: Node output cache
        steps: Steps to register; defaults to the built-in steps
        job_classes: Handler classes for the auto-loader; defaults to WorkflowJob

    Raises:
        UnregisteredStepTypesError: If a stored definition uses an unknown step type

    Example:
        ```python
        runtime = await bootstrap(QueueSettings.from_env())
        handle = await runtime.worker("worker-1").start()
        await runtime.dispatcher.dispatch("workflow", {"definitionId": "ingest"})
        ```
    """
    settings = settings or QueueSettings()

    # Phase 1: construct
    job_store = job_store if job_store is not None else InMemoryJobStore()
    execution_store = execution_store if execution_store is not None else InMemoryExecutionStore()
    cache = cache if cache is not None else InMemoryNodeOutputCache()
    bus = EventBus()
    fanout = NotificationFanout()
    relay = NotificationRelay(fanout)
    step_registry = StepRegistry()
    job_registry = JobRegistry()
    container = Container()
    executor = WorkflowExecutor(execution_store, step_registry, cache, bus)
    dispatcher = Dispatcher(job_store, bus, settings)

    runtime = Runtime(
        settings=settings,
        job_store=job_store,
        execution_store=execution_store,
        cache=cache,
        bus=bus,
        fanout=fanout,
        relay=relay,
        steps=step_registry,
        jobs=job_registry,
        container=container,
        executor=executor,
        dispatcher=dispatcher,
        manager=QueueManager(job_store),
        cleaner=QueueCleaner(job_store, settings),
    )

    # Phase 2: wire
    relay.attach(bus)

    for step in steps if steps is not None else default_steps():
        step_registry.register_step(step)

    container.register_instance(Runtime, runtime)
    container.register_instance(EventBus, bus)
    container.register_instance(WorkflowExecutor, executor)
    container.register_instance(Dispatcher, dispatcher)
    container.register_instance(NotificationFanout, fanout)
    container.register(
        WorkflowJob, lambda c: WorkflowJob(c.resolve(WorkflowExecutor), c.resolve(EventBus))
    )

    loader = JobAutoLoader(job_registry, container)
    runtime.load_report = loader.load_all(
        job_classes if job_classes is not None else DEFAULT_JOB_CLASSES
    )

    definitions = await execution_store.list_definitions()
    step_registry.validate_definitions(definitions)
    for definition in definitions:
        for node in definition.nodes:
            problems = step_registry.get_step(node.step_type).validate(dict(node.config))
            for problem in problems:
                logger.warning(f"Definition {definition.id}, node {node.id}: {problem}")

    logger.info(
        f"Bootstrap complete: {len(step_registry)} step types, {len(job_registry)} job types, "
        f"{len(definitions)} definitions"
    )
    return runtime
