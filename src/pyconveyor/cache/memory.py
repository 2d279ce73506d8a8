"""In-memory node output cache."""

from __future__ import annotations

import asyncio
from typing import Any

from pyconveyor.cache.base import NodeOutputCache
from pyconveyor.models import NodeOutput


class InMemoryNodeOutputCache(NodeOutputCache):
    """Node outputs held in a nested dictionary.

    Layout: ``{execution_id: {(node_id, fingerprint): NodeOutput}}``
    """

    def __init__(self):
        self._entries: dict[str, dict[tuple[str, str | None], NodeOutput]] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryNodeOutputCache"

    def __len__(self) -> int:
        return sum(len(nodes) for nodes in self._entries.values())

    async def get(
        self, execution_id: str, node_id: str, fingerprint: str | None = None
    ) -> NodeOutput | None:
        async with self._lock:
            return self._entries.get(execution_id, {}).get((node_id, fingerprint))

    async def put(
        self,
        execution_id: str,
        node_id: str,
        payload: Any,
        fingerprint: str | None = None,
    ) -> NodeOutput:
        entry = NodeOutput(
            execution_id=execution_id, node_id=node_id, payload=payload, fingerprint=fingerprint
        )
        async with self._lock:
            self._entries.setdefault(execution_id, {})[(node_id, fingerprint)] = entry
        return entry

    async def invalidate(self, execution_id: str, node_id: str | None = None) -> int:
        async with self._lock:
            nodes = self._entries.get(execution_id)
            if not nodes:
                return 0
            if node_id is None:
                del self._entries[execution_id]
                return len(nodes)
            stale = [key for key in nodes if key[0] == node_id]
            for key in stale:
                del nodes[key]
            return len(stale)

    async def get_execution_outputs(self, execution_id: str) -> list[NodeOutput]:
        async with self._lock:
            return list(self._entries.get(execution_id, {}).values())
