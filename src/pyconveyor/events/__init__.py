"""In-process lifecycle events."""

from pyconveyor.events.bus import EventBus, EventHandler
from pyconveyor.events.types import Event, EventType

__all__ = ["Event", "EventBus", "EventHandler", "EventType"]
