"""SQLite-backed node output cache.

Reads go to an in-process layer first and fall back to the table, so a
restarted worker retrying an execution still skips nodes computed before
the restart. Payloads are pickled.
"""

from __future__ import annotations

import logging
import pickle
from typing import Any

from pyconveyor.cache.base import NodeOutputCache
from pyconveyor.models import NodeOutput
from pyconveyor.storage.base import StorageError
from pyconveyor.storage.sqlite import _from_millis, _SqliteBackend, _to_millis

logger = logging.getLogger(__name__)

# SQLite treats NULLs as distinct in a primary key, so "no fingerprint" is stored as ''.
_NO_FINGERPRINT = ""


class SqliteNodeOutputCache(_SqliteBackend, NodeOutputCache):
    """Durable node outputs with a read-through memory layer.

    Usage:
        cache = SqliteNodeOutputCache("outputs.db")
        await cache.connect()
    """

    def __init__(self, db_path: str):
        super().__init__(db_path)
        self._memory: dict[tuple[str, str, str], NodeOutput] = {}

    async def _create_schema(self) -> None:
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS node_outputs (
                execution_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                fingerprint TEXT NOT NULL DEFAULT '',
                payload BLOB NOT NULL,
                computed_at INTEGER NOT NULL,
                PRIMARY KEY (execution_id, node_id, fingerprint)
            )
        """)

    async def get(
        self, execution_id: str, node_id: str, fingerprint: str | None = None
    ) -> NodeOutput | None:
        key = (execution_id, node_id, fingerprint or _NO_FINGERPRINT)
        cached = self._memory.get(key)
        if cached is not None:
            return cached

        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT payload, computed_at FROM node_outputs
                WHERE execution_id = ? AND node_id = ? AND fingerprint = ?
                """,
                key,
            )
            row = await cursor.fetchone()
            await cursor.close()

        if row is None:
            return None

        entry = NodeOutput(
            execution_id=execution_id,
            node_id=node_id,
            payload=pickle.loads(row[0]),
            fingerprint=fingerprint,
            computed_at=_from_millis(row[1]),
        )
        self._memory[key] = entry
        logger.debug(f"Node output loaded from database: execution={execution_id} node={node_id}")
        return entry

    async def put(
        self,
        execution_id: str,
        node_id: str,
        payload: Any,
        fingerprint: str | None = None,
    ) -> NodeOutput:
        self._check_connected()
        entry = NodeOutput(
            execution_id=execution_id, node_id=node_id, payload=payload, fingerprint=fingerprint
        )
        key = (execution_id, node_id, fingerprint or _NO_FINGERPRINT)
        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT OR REPLACE INTO node_outputs
                        (execution_id, node_id, fingerprint, payload, computed_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (*key, pickle.dumps(payload), _to_millis(entry.computed_at)),
                )
                await self._connection.commit()
            except Exception as e:
                raise StorageError(f"Failed to cache output of node {node_id}: {e}") from e
        self._memory[key] = entry
        return entry

    async def invalidate(self, execution_id: str, node_id: str | None = None) -> int:
        self._check_connected()
        for key in list(self._memory):
            if key[0] == execution_id and (node_id is None or key[1] == node_id):
                del self._memory[key]

        sql = "DELETE FROM node_outputs WHERE execution_id = ?"
        params: tuple = (execution_id,)
        if node_id is not None:
            sql += " AND node_id = ?"
            params += (node_id,)
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            count = cursor.rowcount
            await cursor.close()
            await self._connection.commit()
        return count

    async def get_execution_outputs(self, execution_id: str) -> list[NodeOutput]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT node_id, fingerprint, payload, computed_at FROM node_outputs
                WHERE execution_id = ? ORDER BY computed_at ASC
                """,
                (execution_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [
            NodeOutput(
                execution_id=execution_id,
                node_id=row[0],
                fingerprint=row[1] or None,
                payload=pickle.loads(row[2]),
                computed_at=_from_millis(row[3]),
            )
            for row in rows
        ]

    async def close(self) -> None:
        self._memory.clear()
        await super().close()
