"""Storage backends for the job queue and execution records.

Provides multiple implementations behind common interfaces:
    - JobStore / ExecutionStore: Abstract interfaces
    - InMemoryJobStore / InMemoryExecutionStore: In-memory storage for testing
    - SqliteJobStore / SqliteExecutionStore: SQLite-backed storage
    - RedisJobStore: Redis-backed job queue

Design: Adapter Pattern + Dependency Inversion (SOLID)
    Clients depend on the abstractions, enabling easy swapping between
    storage backends.
"""

from pyconveyor.storage.base import (
    ExecutionStore,
    JobStore,
    StorageError,
    WorkNotificationSource,
)
from pyconveyor.storage.memory import InMemoryExecutionStore, InMemoryJobStore

# Backends with third-party drivers are imported lazily so that importing
# pyconveyor.storage does not require every driver to be importable.


def __getattr__(name: str):
    """Lazy import of driver-backed storage implementations."""
    if name == "SqliteJobStore":
        from pyconveyor.storage.sqlite import SqliteJobStore

        return SqliteJobStore
    elif name == "SqliteExecutionStore":
        from pyconveyor.storage.sqlite import SqliteExecutionStore

        return SqliteExecutionStore
    elif name == "RedisJobStore":
        from pyconveyor.storage.redis import RedisJobStore

        return RedisJobStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ExecutionStore",
    "InMemoryExecutionStore",
    "InMemoryJobStore",
    "JobStore",
    "RedisJobStore",
    "SqliteExecutionStore",
    "SqliteJobStore",
    "StorageError",
    "WorkNotificationSource",
]
