"""SQLite-backed storage implementation for pyconveyor.

Design Pattern: Adapter Pattern
SqliteJobStore adapts a SQLite database to the JobStore interface and
SqliteExecutionStore to the ExecutionStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- atomic UPDATE ... RETURNING for claiming jobs
- INTEGER timestamps (milliseconds since epoch, UTC)
"""

from __future__ import annotations

import asyncio
import pickle
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from pyconveyor.models import Execution, Job, JobState, WorkflowDefinition, utcnow
from pyconveyor.storage.base import ExecutionStore, JobStore, StorageError

_JOB_COLUMNS = (
    "id, type, data, options, state, attempts_made, progress, created_at, "
    "processed_at, finished_at, failed_reason, available_at, locked_by, seq"
)


def _to_millis(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=UTC)


class _SqliteBackend:
    """Connection handling shared by the SQLite adapters.

    After __init__, the instance is not yet usable. Call connect() first.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @classmethod
    async def in_memory(cls):
        """
        Create a connected in-memory store for testing.

        Example:
            store = await SqliteJobStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return f"{type(self).__name__}(in-memory)"
        return f"{type(self).__name__}({self.db_path})"

    async def connect(self) -> None:
        """Open the database connection and initialize the schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                self.db_path, timeout=5.0, isolation_level=None
            )
        except Exception as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}") from e

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        raise NotImplementedError

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def close(self) -> None:
        """Close the connection. Explicit resource cleanup, not relying on GC."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None


class SqliteJobStore(_SqliteBackend, JobStore):
    """SQLite-backed durable job queue.

    Usage:
        store = SqliteJobStore("queue.db")
        await store.connect()
        try:
            await store.add_job(job)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        super().__init__(db_path)
        self._work_notify = asyncio.Event()

    async def _create_schema(self) -> None:
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                data BLOB NOT NULL,
                options BLOB NOT NULL,
                state TEXT CHECK( state IN (
                    'waiting','active','completed','failed','delayed'
                ) ) NOT NULL,
                attempts_made INTEGER NOT NULL DEFAULT 0,
                progress INTEGER NOT NULL DEFAULT 0,
                priority INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                processed_at INTEGER,
                finished_at INTEGER,
                failed_reason TEXT,
                available_at INTEGER,
                locked_by TEXT,
                seq INTEGER NOT NULL
            )
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_claim
            ON jobs(state, priority, seq)
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_delayed
            ON jobs(state, available_at)
        """)

    @staticmethod
    def _row_to_job(row: Any) -> Job:
        return Job(
            id=row[0],
            type=row[1],
            data=pickle.loads(row[2]),
            options=pickle.loads(row[3]),
            state=JobState(row[4]),
            attempts_made=row[5],
            progress=row[6],
            created_at=_from_millis(row[7]),
            processed_at=_from_millis(row[8]),
            finished_at=_from_millis(row[9]),
            failed_reason=row[10],
            available_at=_from_millis(row[11]),
            locked_by=row[12],
            sequence=row[13],
        )

    async def _fetch_one(self, sql: str, params: tuple = ()) -> Any:
        cursor = await self._connection.execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        cursor = await self._connection.execute(sql, params)
        count = cursor.rowcount
        await cursor.close()
        await self._connection.commit()
        return count

    async def add_job(self, job: Job) -> str:
        self._check_connected()
        async with self._lock:
            try:
                row = await self._fetch_one("SELECT COALESCE(MAX(seq), 0) + 1 FROM jobs")
                await self._execute(
                    """
                    INSERT INTO jobs (id, type, data, options, state, attempts_made, progress,
                                      priority, created_at, seq)
                    VALUES (?, ?, ?, ?, 'waiting', ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.type,
                        pickle.dumps(job.data),
                        pickle.dumps(job.options),
                        job.attempts_made,
                        job.progress,
                        job.options.priority,
                        _to_millis(job.created_at),
                        row[0],
                    ),
                )
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to add job {job.id}: {e}") from e
        self._work_notify.set()
        return job.id

    async def claim_next(self, worker_id: str) -> Job | None:
        """Claim the next job with an atomic UPDATE.

        Design Pattern: Optimistic Concurrency Control
        UPDATE with WHERE state = 'waiting' ensures only one worker claims each job.
        """
        self._check_connected()
        now_millis = _to_millis(utcnow())

        async with self._lock:
            await self._connection.execute(
                """
                UPDATE jobs SET state = 'waiting', available_at = NULL
                WHERE state = 'delayed' AND (available_at IS NULL OR available_at <= ?)
                """,
                (now_millis,),
            )
            cursor = await self._connection.execute(
                f"""
                UPDATE jobs
                SET state = 'active',
                    attempts_made = attempts_made + 1,
                    processed_at = ?,
                    locked_by = ?
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE state = 'waiting'
                    ORDER BY priority ASC, seq ASC
                    LIMIT 1
                )
                RETURNING {_JOB_COLUMNS}
                """,
                (now_millis, worker_id),
            )
            row = await cursor.fetchone()
            await cursor.close()
            await self._connection.commit()

            if row is None:
                return None

            remaining = await self._fetch_one("SELECT 1 FROM jobs WHERE state = 'waiting' LIMIT 1")
            if remaining is not None:
                self._work_notify.set()

            return self._row_to_job(row)

    async def _update_or_raise(self, job_id: str, sql: str, params: tuple) -> None:
        self._check_connected()
        async with self._lock:
            count = await self._execute(sql, params)
        if count == 0:
            raise StorageError(f"Job not found: job_id={job_id}")

    async def complete_job(self, job_id: str) -> None:
        await self._update_or_raise(
            job_id,
            """
            UPDATE jobs SET state = 'completed', finished_at = ?, progress = 100,
                            locked_by = NULL
            WHERE id = ?
            """,
            (_to_millis(utcnow()), job_id),
        )

    async def fail_job(self, job_id: str, error_message: str) -> None:
        await self._update_or_raise(
            job_id,
            """
            UPDATE jobs SET state = 'failed', finished_at = ?, failed_reason = ?,
                            locked_by = NULL
            WHERE id = ?
            """,
            (_to_millis(utcnow()), error_message, job_id),
        )

    async def retry_job(self, job_id: str, error_message: str, delay: timedelta) -> None:
        if delay > timedelta(0):
            state, available_at = "delayed", _to_millis(utcnow() + delay)
        else:
            state, available_at = "waiting", None
        await self._update_or_raise(
            job_id,
            """
            UPDATE jobs SET state = ?, available_at = ?, failed_reason = ?, locked_by = NULL
            WHERE id = ?
            """,
            (state, available_at, error_message, job_id),
        )
        self._work_notify.set()

    async def requeue_job(self, job_id: str) -> bool:
        self._check_connected()
        async with self._lock:
            count = await self._execute(
                """
                UPDATE jobs SET state = 'waiting', attempts_made = 0, finished_at = NULL,
                                seq = (SELECT COALESCE(MAX(seq), 0) + 1 FROM jobs)
                WHERE id = ? AND state = 'failed'
                """,
                (job_id,),
            )
        if count:
            self._work_notify.set()
        return count > 0

    async def update_progress(self, job_id: str, progress: int) -> None:
        await self._update_or_raise(
            job_id,
            "UPDATE jobs SET progress = ? WHERE id = ?",
            (max(0, min(100, progress)), job_id),
        )

    async def get_job(self, job_id: str) -> Job | None:
        self._check_connected()
        async with self._lock:
            row = await self._fetch_one(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    async def get_jobs(self, states: Iterable[JobState] | None = None) -> list[Job]:
        self._check_connected()
        sql = f"SELECT {_JOB_COLUMNS} FROM jobs"
        params: tuple = ()
        if states is not None:
            values = tuple(state.value for state in states)
            if not values:
                return []
            sql += f" WHERE state IN ({', '.join('?' for _ in values)})"
            params = values
        sql += " ORDER BY seq ASC"
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_job(row) for row in rows]

    async def count_jobs(self) -> dict[JobState, int]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT state, COUNT(*) FROM jobs GROUP BY state"
            )
            rows = await cursor.fetchall()
            await cursor.close()
        counts = {state: 0 for state in JobState}
        for state, count in rows:
            counts[JobState(state)] = count
        return counts

    async def remove_job(self, job_id: str) -> bool:
        self._check_connected()
        async with self._lock:
            return await self._execute("DELETE FROM jobs WHERE id = ?", (job_id,)) > 0

    async def clean(self, state: JobState, older_than: datetime | None = None) -> list[str]:
        self._check_connected()
        if state in (JobState.COMPLETED, JobState.FAILED):
            column = "COALESCE(finished_at, created_at)"
        elif state == JobState.ACTIVE:
            column = "COALESCE(processed_at, created_at)"
        else:
            column = "created_at"

        sql = "SELECT id FROM jobs WHERE state = ?"
        params: tuple = (state.value,)
        if older_than is not None:
            sql += f" AND {column} < ?"
            params += (_to_millis(older_than),)

        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            ids = [row[0] for row in await cursor.fetchall()]
            await cursor.close()
            if ids:
                await self._connection.executemany(
                    "DELETE FROM jobs WHERE id = ?", [(job_id,) for job_id in ids]
                )
                await self._connection.commit()
        return ids

    async def trim(self, state: JobState, keep: int) -> int:
        self._check_connected()
        async with self._lock:
            return await self._execute(
                """
                DELETE FROM jobs WHERE id IN (
                    SELECT id FROM jobs WHERE state = ?
                    ORDER BY COALESCE(finished_at, created_at) DESC, seq DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (state.value, max(keep, 0)),
            )

    async def reset(self) -> None:
        """Clear all data. After reset, storage is empty but functional."""
        self._check_connected()
        async with self._lock:
            await self._execute("DELETE FROM jobs")

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify


class SqliteExecutionStore(_SqliteBackend, ExecutionStore):
    """SQLite-backed definitions and execution attempts.

    Records are pickled; ``status`` is kept in its own column for queries.
    """

    async def _create_schema(self) -> None:
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                body BLOB NOT NULL
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                definition_id TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'pending','running','completed','failed','cancelled'
                ) ) NOT NULL,
                body BLOB NOT NULL,
                PRIMARY KEY (id, attempt)
            )
        """)

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                """
                INSERT OR REPLACE INTO definitions (id, name, is_active, body)
                VALUES (?, ?, ?, ?)
                """,
                (
                    definition.id,
                    definition.name,
                    int(definition.is_active),
                    pickle.dumps(definition),
                ),
            )
            await self._connection.commit()

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT body FROM definitions WHERE id = ?", (definition_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
        return pickle.loads(row[0]) if row else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute("SELECT body FROM definitions ORDER BY id")
            rows = await cursor.fetchall()
            await cursor.close()
        return [pickle.loads(row[0]) for row in rows]

    async def save_execution(self, execution: Execution) -> None:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT OR REPLACE INTO executions (id, attempt, definition_id, status, body)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        execution.id,
                        execution.attempt,
                        execution.definition_id,
                        execution.status.value,
                        pickle.dumps(execution),
                    ),
                )
                await self._connection.commit()
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to save execution {execution.id}: {e}") from e

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT body FROM executions WHERE id = ? ORDER BY attempt DESC LIMIT 1",
                (execution_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return pickle.loads(row[0]) if row else None

    async def get_execution_attempts(self, execution_id: str) -> list[Execution]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT body FROM executions WHERE id = ? ORDER BY attempt ASC", (execution_id,)
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [pickle.loads(row[0]) for row in rows]

    async def reset(self) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute("DELETE FROM definitions")
            await self._connection.execute("DELETE FROM executions")
            await self._connection.commit()
