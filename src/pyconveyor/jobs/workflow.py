"""Queue job that runs a workflow/pipeline definition.

Job data:
    definitionId (or workflowId): Definition to run
    executionId: Optional, defaults to the job id; reused across queue retries
        so that nodes which succeeded in an earlier attempt are served from the cache
    items (or inputData): Input batch
    documentId, datasetId, userId: Correlation ids
    options: ``{"maxConcurrency": int}``
"""

from __future__ import annotations

import logging
from typing import Any

from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.executor import ExecutionFailedError, ExecutionOptions, WorkflowExecutor
from pyconveyor.jobs.base import BaseJob
from pyconveyor.models import Job, NonRetryableError

logger = logging.getLogger(__name__)


class InvalidJobDataError(NonRetryableError):
    pass


class WorkflowJob(BaseJob):
    job_type = "workflow"
    categories = ("workflow", "document")

    def __init__(self, executor: WorkflowExecutor, bus: EventBus):
        self._executor = executor
        self._bus = bus

    async def handle(self, job: Job) -> Any:
        """Run the workflow under a stable execution id.

        Without an explicit ``executionId`` the job id is used, so a queue
        retry resumes the same execution and reuses its cached node outputs.
        """
        if job.data.get("executionId"):
            return await super().handle(job)
        return await super().handle(job.evolve(data={**job.data, "executionId": job.id}))

    async def process(self, data: dict[str, Any]) -> dict[str, Any]:
        definition_id = data.get("definitionId") or data.get("workflowId")
        if not definition_id:
            raise InvalidJobDataError("Workflow job data requires definitionId")

        document_id = data.get("documentId")
        dataset_id = data.get("datasetId")
        raw_options = data.get("options") or {}
        options = None
        if "maxConcurrency" in raw_options:
            options = ExecutionOptions(max_concurrency=int(raw_options["maxConcurrency"]))

        self._document_event(EventType.DOCUMENT_PROCESSING_STARTED, document_id, dataset_id)
        try:
            execution = await self._executor.execute(
                definition_id,
                list(data.get("items") or data.get("inputData") or []),
                data.get("executionId"),
                user_id=data.get("userId"),
                document_id=document_id,
                dataset_id=dataset_id,
                metadata={"triggerSource": data.get("triggerSource", "queue")},
                options=options,
            )
        except ExecutionFailedError as e:
            self._document_event(
                EventType.DOCUMENT_PROCESSING_FAILED, document_id, dataset_id, error=str(e)
            )
            raise

        logger.info(
            f"Workflow job finished execution {execution.id}: status={execution.status.value}"
        )
        self._document_event(
            EventType.DOCUMENT_PROCESSING_COMPLETED,
            document_id,
            dataset_id,
            executionId=execution.id,
            executionStatus=execution.status.value,
        )
        return execution.to_dict()

    def _document_event(
        self, event_type: EventType, document_id: str | None, dataset_id: str | None, **fields: Any
    ) -> None:
        if document_id is None:
            return
        self._bus.publish(
            Event(
                type=event_type,
                payload={"documentId": document_id, "datasetId": dataset_id, **fields},
            )
        )
