"""Synchronous in-process event bus.

Design Pattern: Observer
Components publish lifecycle events without knowing who listens; the
notification relay and persistence listeners subscribe by event type.

Dispatch policy: fail-fast
    Handlers run synchronously inside ``publish`` in registration order.
    If a handler raises, the exception propagates to the publisher and the
    remaining handlers for that event are not invoked. Handlers that must
    not disturb the publisher have to catch their own errors.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable

from pyconveyor.events.types import Event, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]


class EventBus:
    """Subscriber table keyed by event type.

    The table is built during bootstrap and read-mostly afterwards; it is
    not meant to be mutated concurrently with ``publish``.

    Example:
        ```python
        bus = EventBus()
        bus.subscribe(EventType.QUEUE_JOB_FAILED, lambda e: alerts.append(e))
        bus.publish(Event.queue(EventType.QUEUE_JOB_FAILED, job_id, "workflow"))
        ```
    """

    def __init__(self):
        self._subscribers: dict[EventType, list[EventHandler]] = {}

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Register ``handler`` for ``event_type``.

        Raises:
            TypeError: If the handler is a coroutine function
        """
        if inspect.iscoroutinefunction(handler):
            raise TypeError(
                f"Event handlers run synchronously; {handler!r} is a coroutine function"
            )
        self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed {handler!r} to {event_type}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        """Remove one registration of ``handler``.

        Returns:
            True if the handler was subscribed
        """
        handlers = self._subscribers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._subscribers[event_type]
        return True

    def unsubscribe_all(self, event_type: EventType) -> int:
        """Remove every handler of ``event_type`` and return how many were removed."""
        return len(self._subscribers.pop(event_type, []))

    def publish(self, event: Event) -> None:
        """Deliver ``event`` to its subscribers, in registration order.

        Raises:
            Exception: Whatever the first failing handler raised
        """
        # Snapshot so a handler unsubscribing itself does not skip its neighbour
        handlers = list(self._subscribers.get(event.type, ()))
        logger.debug(f"Publishing {event.type} to {len(handlers)} subscriber(s)")
        for handler in handlers:
            handler(event)

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, ()))
