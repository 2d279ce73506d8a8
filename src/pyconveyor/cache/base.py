"""
NodeOutputCache - memoization of node outputs within an execution.

Design Pattern: Adapter Pattern
NodeOutputCache is the interface the executor programs against;
InMemoryNodeOutputCache and SqliteNodeOutputCache adapt a dictionary and a
SQLite table to it.

Entries are keyed by ``(execution_id, node_id, fingerprint)``. There is no
time-based eviction: an entry lives until it is invalidated or the
execution is discarded.
"""

from __future__ import annotations

import pickle
from abc import ABC, abstractmethod
from typing import Any

import xxhash

from pyconveyor.models import NodeOutput


def fingerprint(items: Any) -> str:
    """
    Hash a node's input so changed upstream data produces a different key.

    Uses xxhash over the pickled input; equal inputs built the same way
    produce equal fingerprints.

    Example:
        fingerprint([{"id": 1, "content": "a"}])  # '9f3c...'
    """
    return xxhash.xxh64(pickle.dumps(items)).hexdigest()


class NodeOutputCache(ABC):
    """Abstract store for memoized node outputs.

    Distinct nodes of the same execution may be written concurrently; each
    writes its own key.
    """

    @abstractmethod
    async def get(
        self, execution_id: str, node_id: str, fingerprint: str | None = None
    ) -> NodeOutput | None:
        """
        Look up a cached output.

        Returns:
            The cached NodeOutput, or None on a miss
        """
        pass

    @abstractmethod
    async def put(
        self,
        execution_id: str,
        node_id: str,
        payload: Any,
        fingerprint: str | None = None,
    ) -> NodeOutput:
        """Store ``payload`` for the key, replacing any previous entry."""
        pass

    @abstractmethod
    async def invalidate(self, execution_id: str, node_id: str | None = None) -> int:
        """
        Drop cached outputs of one node, or of the whole execution.

        Returns:
            Number of entries removed
        """
        pass

    @abstractmethod
    async def get_execution_outputs(self, execution_id: str) -> list[NodeOutput]:
        """Return every cached output of an execution."""
        pass

    async def close(self) -> None:
        pass
