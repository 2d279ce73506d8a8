"""Client notification fan-out and the event relay that feeds it."""

from pyconveyor.notifications.fanout import (
    NotificationFanout,
    NotificationMessage,
    NotificationStream,
    NotificationType,
    StreamClosedError,
    format_sse,
)
from pyconveyor.notifications.relay import NotificationRelay

__all__ = [
    "NotificationFanout",
    "NotificationMessage",
    "NotificationRelay",
    "NotificationStream",
    "NotificationType",
    "StreamClosedError",
    "format_sse",
]
