"""Node output cache backends.

    - NodeOutputCache: Abstract interface
    - InMemoryNodeOutputCache: dictionary-backed cache
    - SqliteNodeOutputCache: SQLite-backed cache with a memory layer
"""

from pyconveyor.cache.base import NodeOutputCache, fingerprint
from pyconveyor.cache.memory import InMemoryNodeOutputCache


def __getattr__(name: str):
    """Lazy import of the SQLite-backed cache."""
    if name == "SqliteNodeOutputCache":
        from pyconveyor.cache.sqlite import SqliteNodeOutputCache

        return SqliteNodeOutputCache
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "InMemoryNodeOutputCache",
    "NodeOutputCache",
    "SqliteNodeOutputCache",
    "fingerprint",
]
