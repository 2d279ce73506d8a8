"""Workflow/pipeline executor: the execution state machine.

Runs a definition's nodes over an item batch:

1. Reject inactive definitions and cyclic graphs before any record exists
2. Create the Execution (pending), move it to running, publish STARTED
3. Walk the dependency levels; nodes of one level run concurrently up to
   ``max_concurrency``, so linear pipelines run strictly in sequence
4. Per node: serve from the Node Output Cache on a hit, otherwise resolve
   the step from the Step Registry, execute it and cache the result
5. A node's output is the input of its dependents
6. A step failure stops the traversal: the execution is marked failed,
   FAILED is published once and ExecutionFailedError is raised
7. Otherwise the execution completes with its metrics and COMPLETED

Outputs cached before a failure stay valid, so running the same execution
id again (a new attempt) skips every node that already succeeded.

Design: Information Hiding (Parnas)
The executor owns Execution status transitions and cache writes. Job
handlers only decide whether to run it and what to do with the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from uuid_extensions import uuid7

from pyconveyor.cache import NodeOutputCache, fingerprint
from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.executor.graph import DefinitionError, execution_levels
from pyconveyor.models import (
    Execution,
    ExecutionStatus,
    NodeDefinition,
    NodeMetrics,
    NonRetryableError,
    RetryableError,
    WorkflowDefinition,
)
from pyconveyor.steps import Item, StepContext, StepRegistry
from pyconveyor.storage.base import ExecutionStore

logger = logging.getLogger(__name__)


class DefinitionNotFoundError(DefinitionError):
    def __init__(self, definition_id: str):
        super().__init__(f"Workflow definition not found: {definition_id}")
        self.definition_id = definition_id


class DefinitionInactiveError(DefinitionError):
    def __init__(self, definition_id: str):
        super().__init__(f"Workflow definition is not active: {definition_id}")
        self.definition_id = definition_id


class ExecutionAlreadyRunningError(NonRetryableError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} is already running")
        self.execution_id = execution_id


class ExecutionFailedError(RetryableError):
    """A node failed and the execution was marked failed.

    Retryable: the queue may run the same execution id again, and nodes
    that succeeded before the failure are then served from the cache.
    """

    def __init__(self, execution: Execution, node_id: str | None = None):
        super().__init__(execution.error or f"Execution {execution.id} failed")
        self.execution = execution
        self.node_id = node_id


@dataclass(frozen=True)
class ExecutionOptions:
    max_concurrency: int = 4
    """Upper bound on nodes of one level running at the same time."""

    use_fingerprint: bool = True
    """Include a hash of the node input in the cache key."""


@dataclass
class _Run:
    """Mutable state of one execution attempt."""

    execution: Execution
    definition: WorkflowDefinition
    items: list[Item]
    options: ExecutionOptions
    user_id: str | None
    document_id: str | None
    dataset_id: str | None
    metadata: dict[str, Any]
    semaphore: asyncio.Semaphore
    outputs: dict[str, list[Item]] = field(default_factory=dict)
    completed_nodes: int = 0
    started: float = field(default_factory=time.perf_counter)

    def progress(self) -> dict[str, int]:
        total = len(self.definition.nodes)
        percentage = round(self.completed_nodes / total * 100) if total else 100
        return {
            "completedNodes": self.completed_nodes,
            "totalNodes": total,
            "percentage": percentage,
        }

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class _NodeFailure(Exception):
    def __init__(self, node_id: str, error: BaseException):
        super().__init__(str(error))
        self.node_id = node_id
        self.error = error


class WorkflowExecutor:
    """Executes workflow and pipeline definitions.

    Usage:
        executor = WorkflowExecutor(store, steps, cache, bus)
        execution = await executor.execute("ingest", segments, user_id="u-1")
        print(execution.status, execution.metrics.items_processed)
    """

    def __init__(
        self,
        store: ExecutionStore,
        steps: StepRegistry,
        cache: NodeOutputCache,
        bus: EventBus,
        options: ExecutionOptions | None = None,
    ):
        self._store = store
        self._steps = steps
        self._cache = cache
        self._bus = bus
        self._default_options = options or ExecutionOptions()
        self._active: set[str] = set()
        self._cancel_requested: set[str] = set()

    def with_max_concurrency(self, max_concurrency: int) -> WorkflowExecutor:
        """Set the default per-level concurrency (builder pattern)."""
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self._default_options = ExecutionOptions(
            max_concurrency=max_concurrency,
            use_fingerprint=self._default_options.use_fingerprint,
        )
        return self

    @property
    def store(self) -> ExecutionStore:
        return self._store

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._active

    def cancel(self, execution_id: str) -> bool:
        """
        Request cooperative cancellation of a running execution.

        Nodes already running finish; no new node starts after the request.

        Returns:
            True if the execution is running in this executor
        """
        if execution_id not in self._active:
            return False
        self._cancel_requested.add(execution_id)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    async def load_definition(self, definition_id: str) -> WorkflowDefinition:
        """
        Load a definition from the store.

        Raises:
            DefinitionNotFoundError: If no definition has that id
        """
        definition = await self._store.get_definition(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(definition_id)
        return definition

    async def execute(
        self,
        definition_id: str,
        items: list[Item],
        execution_id: str | None = None,
        *,
        user_id: str | None = None,
        document_id: str | None = None,
        dataset_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
    ) -> Execution:
        """Load ``definition_id`` and run it; see ``execute_definition``."""
        definition = await self.load_definition(definition_id)
        return await self.execute_definition(
            definition,
            items,
            execution_id,
            user_id=user_id,
            document_id=document_id,
            dataset_id=dataset_id,
            metadata=metadata,
            options=options,
        )

    async def execute_definition(
        self,
        definition: WorkflowDefinition,
        items: list[Item],
        execution_id: str | None = None,
        *,
        user_id: str | None = None,
        document_id: str | None = None,
        dataset_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
    ) -> Execution:
        """
        Run ``definition`` over ``items``.

        Args:
            definition: Definition to run
            items: Input batch of the root nodes
            execution_id: Reuse an id to run a new attempt with the cache of
                earlier attempts; a fresh id is generated when omitted
            user_id: Owner recorded on events and step contexts
            document_id: Optional correlation id
            dataset_id: Optional correlation id
            metadata: Free-form values handed to every step
            options: Per-run overrides of the executor defaults

        Returns:
            The completed or cancelled Execution

        Raises:
            DefinitionInactiveError: If the definition is inactive
            DefinitionError: If the graph is cyclic or references unknown nodes
            ExecutionAlreadyRunningError: If the id is running here already
            ExecutionFailedError: If a node failed; ``.execution`` is the failed record
        """
        if not definition.is_active:
            raise DefinitionInactiveError(definition.id)
        levels = execution_levels(definition)

        execution_id = execution_id or str(uuid7())
        if execution_id in self._active:
            raise ExecutionAlreadyRunningError(execution_id)

        options = options or self._default_options
        previous = await self._store.get_execution(execution_id)
        execution = Execution(
            id=execution_id,
            definition_id=definition.id,
            attempt=previous.attempt + 1 if previous else 1,
            context={
                "userId": user_id,
                "documentId": document_id,
                "datasetId": dataset_id,
            },
        )
        await self._store.save_execution(execution)

        run = _Run(
            execution=execution,
            definition=definition,
            items=list(items),
            options=options,
            user_id=user_id,
            document_id=document_id,
            dataset_id=dataset_id,
            metadata=dict(metadata or {}),
            semaphore=asyncio.Semaphore(options.max_concurrency),
        )

        self._active.add(execution_id)
        try:
            return await self._run(run, levels)
        finally:
            self._active.discard(execution_id)
            self._cancel_requested.discard(execution_id)

    async def _run(self, run: _Run, levels: list[list[str]]) -> Execution:
        execution = run.execution
        execution.transition_to(ExecutionStatus.RUNNING)
        await self._store.save_execution(execution)
        logger.info(
            f"Execution {execution.id} started: definition={run.definition.id} "
            f"attempt={execution.attempt} nodes={len(run.definition.nodes)} items={len(run.items)}"
        )
        try:
            self._publish(
                EventType.PIPELINE_EXECUTION_STARTED,
                run,
                data={
                    "status": "running",
                    "attempt": execution.attempt,
                    "progress": run.progress(),
                },
            )
            for level in levels:
                if execution.id in self._cancel_requested:
                    return await self._cancel(run)
                await self._run_level(run, level)
            if execution.id in self._cancel_requested:
                return await self._cancel(run)
        except _NodeFailure as failure:
            await self._fail(run, failure.error, failure.node_id)
            raise ExecutionFailedError(execution, failure.node_id) from failure.error
        except asyncio.CancelledError:
            # Interrupted from outside (job timeout, worker abort); never leave it running.
            await self._fail(run, "execution interrupted", None)
            raise
        except Exception as e:
            # Subscriber or storage error outside any node
            if execution.status.is_terminal:
                raise
            await self._fail(run, e, None)
            raise ExecutionFailedError(execution) from e

        return await self._complete(run)

    async def _run_level(self, run: _Run, level: list[str]) -> None:
        results = await asyncio.gather(
            *(self._run_node(run, run.definition.node(node_id)) for node_id in level),
            return_exceptions=True,
        )
        failure: _NodeFailure | None = None
        for node_id, result in zip(level, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                if failure is None:
                    failure = _NodeFailure(node_id, result)
            elif result is not None:
                run.outputs[node_id] = result
        if failure is not None:
            raise failure

    def _node_input(self, run: _Run, node: NodeDefinition) -> list[Item]:
        if not node.depends_on:
            return list(run.items)
        inputs: list[Item] = []
        for dep in node.depends_on:
            inputs.extend(run.outputs.get(dep, []))
        return inputs

    async def _run_node(self, run: _Run, node: NodeDefinition) -> list[Item] | None:
        async with run.semaphore:
            execution = run.execution
            if execution.id in self._cancel_requested:
                return None

            inputs = self._node_input(run, node)
            node_fingerprint = fingerprint(inputs) if run.options.use_fingerprint else None
            self._publish(
                EventType.PIPELINE_STEP_STARTED,
                run,
                step_id=node.id,
                data={"stepType": node.step_type, "inputCount": len(inputs)},
            )

            started = time.perf_counter()
            cached = await self._cache.get(execution.id, node.id, node_fingerprint)
            if cached is not None:
                output = cached.payload["items"]
                step_metrics = cached.payload.get("metrics", {})
                logger.debug(f"Execution {execution.id}: cache hit for node {node.id}")
            else:
                try:
                    step = self._steps.get_step(node.step_type)
                    context = StepContext(
                        execution_id=execution.id,
                        definition_id=run.definition.id,
                        node_id=node.id,
                        config=dict(node.config),
                        user_id=run.user_id,
                        document_id=run.document_id,
                        dataset_id=run.dataset_id,
                        metadata=run.metadata,
                    )
                    result = await step.execute(inputs, context)
                except Exception as e:
                    logger.warning(f"Execution {execution.id}: node {node.id} failed: {e}")
                    self._publish(
                        EventType.PIPELINE_STEP_FAILED,
                        run,
                        step_id=node.id,
                        data={"stepType": node.step_type},
                        error=str(e) or type(e).__name__,
                    )
                    raise
                output = list(result.items)
                step_metrics = dict(result.metrics)
                await self._cache.put(
                    execution.id,
                    node.id,
                    {"items": output, "metrics": step_metrics},
                    node_fingerprint,
                )

            node_metrics = NodeMetrics(
                node_id=node.id,
                step_type=node.step_type,
                input_count=len(inputs),
                output_count=len(output),
                duration_ms=(time.perf_counter() - started) * 1000,
                cached=cached is not None,
                step_metrics=step_metrics,
            )
            execution.metrics.nodes[node.id] = node_metrics
            run.completed_nodes += 1

            self._publish(
                EventType.PIPELINE_STEP_COMPLETED,
                run,
                step_id=node.id,
                data={**node_metrics.to_dict(), "status": "running", "progress": run.progress()},
            )
            return output

    def _sink_output(self, run: _Run) -> list[Item]:
        depended_on = {dep for node in run.definition.nodes for dep in node.depends_on}
        output: list[Item] = []
        for node in run.definition.nodes:
            if node.id not in depended_on:
                output.extend(run.outputs.get(node.id, []))
        return output

    def _record_metrics(self, run: _Run) -> None:
        metrics = run.execution.metrics
        metrics.nodes_processed = run.completed_nodes
        metrics.total_duration_ms = run.elapsed_ms()

    async def _complete(self, run: _Run) -> Execution:
        execution = run.execution
        execution.output = self._sink_output(run)
        self._record_metrics(run)
        execution.metrics.items_processed = len(execution.output)
        execution.transition_to(ExecutionStatus.COMPLETED)
        await self._store.save_execution(execution)

        logger.info(
            f"Execution {execution.id} completed: nodes={execution.metrics.nodes_processed} "
            f"items={execution.metrics.items_processed} "
            f"duration={execution.metrics.total_duration_ms:.1f}ms"
        )
        self._publish_outcome(
            EventType.PIPELINE_EXECUTION_COMPLETED,
            run,
            data={
                "status": "completed",
                "metrics": execution.metrics.to_dict(),
                "progress": run.progress(),
            },
        )
        return execution

    async def _fail(self, run: _Run, error: BaseException | str, node_id: str | None) -> None:
        execution = run.execution
        execution.error = error if isinstance(error, str) else (str(error) or type(error).__name__)
        self._record_metrics(run)
        execution.transition_to(ExecutionStatus.FAILED)
        await self._store.save_execution(execution)

        logger.error(f"Execution {execution.id} failed at node {node_id}: {execution.error}")
        self._publish_outcome(
            EventType.PIPELINE_EXECUTION_FAILED,
            run,
            step_id=node_id,
            data={"status": "failed", "progress": run.progress()},
            error=execution.error,
        )

    async def _cancel(self, run: _Run) -> Execution:
        execution = run.execution
        self._record_metrics(run)
        execution.transition_to(ExecutionStatus.CANCELLED)
        await self._store.save_execution(execution)

        logger.info(f"Execution {execution.id} cancelled after {run.completed_nodes} node(s)")
        self._publish_outcome(
            EventType.PIPELINE_EXECUTION_CANCELLED,
            run,
            data={"status": "cancelled", "progress": run.progress()},
        )
        return execution

    def _publish(
        self,
        event_type: EventType,
        run: _Run,
        step_id: str | None = None,
        data: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        self._bus.publish(
            Event.pipeline(
                event_type,
                execution_id=run.execution.id,
                pipeline_id=run.definition.id,
                step_id=step_id,
                data=data,
                error=error,
                user_id=run.user_id,
            )
        )

    def _publish_outcome(self, event_type: EventType, run: _Run, **kwargs: Any) -> None:
        """Publish a terminal event after its status was saved.

        The outcome is already recorded, so a failing subscriber is logged
        and does not replace it.
        """
        try:
            self._publish(event_type, run, **kwargs)
        except Exception as e:
            logger.error(f"Execution {run.execution.id}: subscriber of {event_type} failed: {e}")
