"""Bridge from lifecycle events to client notifications.

NotificationRelay subscribes to pipeline and document events on the bus and
turns them into workflow/document notifications. Because the bus is
fail-fast, the relay never lets a delivery problem escape into the
publisher: errors are logged and dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.notifications.fanout import NotificationFanout

logger = logging.getLogger(__name__)


class NotificationRelay:
    """Maps pipeline events onto the fan-out.

    | Event                          | Notification                  |
    |--------------------------------|-------------------------------|
    | PIPELINE_EXECUTION_STARTED     | WORKFLOW_EXECUTION_UPDATE     |
    | PIPELINE_STEP_COMPLETED        | WORKFLOW_EXECUTION_UPDATE     |
    | PIPELINE_EXECUTION_CANCELLED   | WORKFLOW_EXECUTION_UPDATE     |
    | PIPELINE_EXECUTION_COMPLETED   | WORKFLOW_EXECUTION_COMPLETED  |
    | PIPELINE_EXECUTION_FAILED      | WORKFLOW_EXECUTION_FAILED     |
    | DOCUMENT_PROCESSING_*          | DOCUMENT_PROCESSING_UPDATE    |
    """

    def __init__(self, fanout: NotificationFanout):
        self._fanout = fanout
        self._handlers: dict[EventType, Callable[[Event], None]] = {
            EventType.PIPELINE_EXECUTION_STARTED: self._on_execution_update,
            EventType.PIPELINE_STEP_COMPLETED: self._on_execution_update,
            EventType.PIPELINE_EXECUTION_CANCELLED: self._on_execution_update,
            EventType.PIPELINE_EXECUTION_COMPLETED: self._on_execution_completed,
            EventType.PIPELINE_EXECUTION_FAILED: self._on_execution_failed,
            EventType.DOCUMENT_PROCESSING_STARTED: self._on_document_event,
            EventType.DOCUMENT_PROCESSING_COMPLETED: self._on_document_event,
            EventType.DOCUMENT_PROCESSING_FAILED: self._on_document_event,
        }

    def attach(self, bus: EventBus) -> None:
        for event_type, handler in self._handlers.items():
            bus.subscribe(event_type, handler)

    def detach(self, bus: EventBus) -> None:
        for event_type, handler in self._handlers.items():
            bus.unsubscribe(event_type, handler)

    def _relay(self, event: Event, send: Callable[[], int]) -> None:
        try:
            send()
        except Exception as e:
            logger.warning(f"Notification for {event.type} not delivered: {e}")

    def _on_execution_update(self, event: Event) -> None:
        payload = event.payload
        data = dict(payload.get("data") or {})
        if "stepId" in payload:
            data["nodeId"] = payload["stepId"]
        self._relay(
            event,
            lambda: self._fanout.send_workflow_execution_update(
                payload["executionId"], payload["pipelineId"], data
            ),
        )

    def _on_execution_completed(self, event: Event) -> None:
        payload = event.payload
        self._relay(
            event,
            lambda: self._fanout.send_workflow_execution_completed(
                payload["executionId"], payload["pipelineId"], dict(payload.get("data") or {})
            ),
        )

    def _on_execution_failed(self, event: Event) -> None:
        payload = event.payload
        self._relay(
            event,
            lambda: self._fanout.send_workflow_execution_failed(
                payload["executionId"],
                payload["pipelineId"],
                payload.get("error") or "unknown error",
            ),
        )

    def _on_document_event(self, event: Event) -> None:
        payload = event.payload
        document_id = payload.get("documentId")
        if document_id is None:
            return
        data = {k: v for k, v in payload.items() if k not in ("documentId", "datasetId")}
        data["status"] = event.type.value.rsplit(".", 1)[-1]
        self._relay(
            event,
            lambda: self._fanout.send_document_processing_update(
                document_id, payload.get("datasetId"), data
            ),
        )
