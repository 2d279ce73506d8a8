"""Notification fan-out to long-lived client streams.

Each connected client owns a buffered stream. Every message sent after a
client connects is offered to its buffer; there is no backlog or replay,
and with nobody connected a message is simply dropped. Delivery is
at-most-once and best-effort: failures are logged and never reach the
sender.

Clients reconcile local state by filtering on the correlation fields
embedded in ``data`` (``executionId``, ``documentId``, ``postId``), usually
by draining the buffer periodically instead of blocking on it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from uuid_extensions import uuid7

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    DOCUMENT_PROCESSING_UPDATE = "DOCUMENT_PROCESSING_UPDATE"
    DATASET_UPDATE = "DATASET_UPDATE"
    GRAPH_EXTRACTION_UPDATE = "GRAPH_EXTRACTION_UPDATE"
    WORKFLOW_EXECUTION_UPDATE = "WORKFLOW_EXECUTION_UPDATE"
    WORKFLOW_EXECUTION_COMPLETED = "WORKFLOW_EXECUTION_COMPLETED"
    WORKFLOW_EXECUTION_FAILED = "WORKFLOW_EXECUTION_FAILED"
    POST_APPROVAL_COMPLETED = "POST_APPROVAL_COMPLETED"
    POST_APPROVAL_FAILED = "POST_APPROVAL_FAILED"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NotificationMessage:
    type: NotificationType
    data: dict[str, Any]
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


def format_sse(message: NotificationMessage) -> str:
    """Encode a message as a server-sent-events frame."""
    body = json.dumps(message.to_dict(), default=str)
    return f"event: {message.type.value}\ndata: {body}\n\n"


class StreamClosedError(Exception):
    """Raised when waiting on a stream that was closed."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Notification stream {client_id} is closed")


# Queued by close() to wake a pending reader
_CLOSED = object()


class NotificationStream:
    """One client's buffered view of the broadcast channel.

    Closing the stream wakes any reader blocked in ``get`` or in
    ``async for``. Messages buffered before the close are still returned,
    except the oldest one when the buffer was full.
    """

    def __init__(self, client_id: str, max_buffer: int = 1000):
        self.client_id = client_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_buffer)
        self._closed = False

    def __repr__(self) -> str:
        return f"NotificationStream({self.client_id})"

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: NotificationMessage) -> None:
        """Buffer ``message``.

        Raises:
            asyncio.QueueFull: If the client is not keeping up
        """
        if not self._closed:
            self._queue.put_nowait(message)

    def drain(self) -> list[NotificationMessage]:
        """Return and remove every buffered message without blocking."""
        messages = []
        while not self._queue.empty():
            message = self._queue.get_nowait()
            if message is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            messages.append(message)
        return messages

    async def get(self, timeout: float | None = None) -> NotificationMessage:
        """Wait for the next message.

        Raises:
            TimeoutError: If ``timeout`` elapses first
            StreamClosedError: If the stream is closed and its buffer is empty
        """
        message = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if message is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StreamClosedError(self.client_id)
        return message

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            # Make room for the close marker
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[NotificationMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[NotificationMessage]:
        while True:
            try:
                message = await self.get()
            except StreamClosedError:
                return
            yield message


class NotificationFanout:
    """Broadcast channel of NotificationMessage objects.

    Example:
        ```python
        fanout = NotificationFanout()
        stream = fanout.connect("browser-tab-1")
        fanout.send_workflow_execution_completed(execution_id, workflow_id, {"itemsProcessed": 7})
        messages = stream.drain()
        ```
    """

    def __init__(self, max_buffer: int = 1000):
        self._streams: dict[str, NotificationStream] = {}
        self._max_buffer = max_buffer

    def __len__(self) -> int:
        return len(self._streams)

    @property
    def client_ids(self) -> list[str]:
        return list(self._streams)

    def connect(self, client_id: str | None = None) -> NotificationStream:
        """Open a stream for ``client_id`` (generated when omitted).

        Reconnecting with an existing id replaces the previous stream.
        """
        client_id = client_id or str(uuid7())
        previous = self._streams.get(client_id)
        if previous is not None:
            previous.close()
        stream = NotificationStream(client_id, self._max_buffer)
        self._streams[client_id] = stream
        logger.info(f"Notification client connected: {client_id} ({len(self._streams)} total)")
        return stream

    def disconnect(self, client_id: str) -> bool:
        stream = self._streams.pop(client_id, None)
        if stream is None:
            return False
        stream.close()
        logger.info(f"Notification client disconnected: {client_id}")
        return True

    async def stream(self, client_id: str | None = None) -> AsyncIterator[str]:
        """Yield server-sent-event frames for a new client until it goes away."""
        stream = self.connect(client_id)
        try:
            async for message in stream:
                yield format_sse(message)
        finally:
            if self._streams.get(stream.client_id) is stream:
                self.disconnect(stream.client_id)

    def send(self, notification_type: NotificationType, data: dict[str, Any]) -> int:
        """Offer a message to every connected stream.

        Returns:
            Number of streams that accepted the message
        """
        message = NotificationMessage(type=notification_type, data=data)
        delivered = 0
        for client_id, stream in list(self._streams.items()):
            try:
                stream.offer(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {notification_type} for client {client_id}: buffer full"
                )
            except Exception as e:
                logger.warning(f"Failed to deliver {notification_type} to {client_id}: {e}")
        return delivered

    # =========================================================================
    # Correlated helpers
    # =========================================================================

    def send_document_processing_update(
        self, document_id: str, dataset_id: str | None, data: dict[str, Any]
    ) -> int:
        return self.send(
            NotificationType.DOCUMENT_PROCESSING_UPDATE,
            {"documentId": document_id, "datasetId": dataset_id, **data},
        )

    def send_dataset_update(self, dataset_id: str, data: dict[str, Any]) -> int:
        return self.send(NotificationType.DATASET_UPDATE, {"datasetId": dataset_id, **data})

    def send_graph_extraction_update(
        self, dataset_id: str, document_id: str, data: dict[str, Any]
    ) -> int:
        return self.send(
            NotificationType.GRAPH_EXTRACTION_UPDATE,
            {"datasetId": dataset_id, "documentId": document_id, **data},
        )

    def send_workflow_execution_update(
        self, execution_id: str, workflow_id: str, data: dict[str, Any]
    ) -> int:
        return self.send(
            NotificationType.WORKFLOW_EXECUTION_UPDATE,
            {"executionId": execution_id, "workflowId": workflow_id, **data},
        )

    def send_workflow_execution_completed(
        self, execution_id: str, workflow_id: str, data: dict[str, Any]
    ) -> int:
        return self.send(
            NotificationType.WORKFLOW_EXECUTION_COMPLETED,
            {"executionId": execution_id, "workflowId": workflow_id, **data},
        )

    def send_workflow_execution_failed(
        self, execution_id: str, workflow_id: str, error: str
    ) -> int:
        return self.send(
            NotificationType.WORKFLOW_EXECUTION_FAILED,
            {"executionId": execution_id, "workflowId": workflow_id, "error": error},
        )

    def send_post_approval_completed(self, post_id: str, data: dict[str, Any]) -> int:
        return self.send(NotificationType.POST_APPROVAL_COMPLETED, {"postId": post_id, **data})

    def send_post_approval_failed(self, post_id: str, error: str) -> int:
        return self.send(NotificationType.POST_APPROVAL_FAILED, {"postId": post_id, "error": error})
