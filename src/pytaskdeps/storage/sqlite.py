"""SQLite-backed storage implementation for pytaskdeps.

Design Pattern: Adapter Pattern
SqliteTaskStore adapts an SQLite database to the TaskStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- foreign keys with ON DELETE CASCADE so deleting a task removes its edges
- compare-and-set status updates (UPDATE ... WHERE status = ?)
- payload patches applied with json_patch() inside the same UPDATE
- INTEGER timestamps (milliseconds)
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from pytaskdeps.models import (
    ReadinessPolicy,
    Task,
    TaskStatus,
    TaskSummary,
    TaskWithDependencies,
    decode_payload,
    encode_payload,
    utc_now,
)
from pytaskdeps.storage.base import StorageError, TaskStore, check_transition

logger = logging.getLogger(__name__)

_TASK_COLUMNS = "id, handler_name, status, payload, created_at, updated_at, completed_at"

_TERMINAL = (TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value)


def _millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=UTC)


class SqliteTaskStore(TaskStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteTaskStore("tasks.db")
        await store.connect()
        try:
            task = await store.create_task("ConstantRunner", {"value": 1})
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> SqliteTaskStore:
        """
        Create a connected in-memory SQLite store for testing.

        Example:
            store = await SqliteTaskStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteTaskStore(in-memory)"
        return f"SqliteTaskStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode and foreign keys
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode; each statement is atomic
        )

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

        # Cascading edge deletion depends on this; it is per-connection
        await self._connection.execute("PRAGMA foreign_keys=ON")

        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - tasks: one row per node, UPPERCASE status values
        - task_dependencies: one row per edge, cascading on both ends
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                handler_name TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'PENDING','IN_PROGRESS','COMPLETED','CANCELLED'
                ) ) NOT NULL DEFAULT 'PENDING',
                payload TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                completed_at INTEGER
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS task_dependencies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                dependency_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                CHECK (task_id <> dependency_id),
                UNIQUE (task_id, dependency_id)
            )
        """)

        for statement in (
            "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_handler_name ON tasks(handler_name)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_completed_at ON tasks(completed_at)",
            "CREATE INDEX IF NOT EXISTS idx_task_dependencies_dependency_id "
            "ON task_dependencies(dependency_id)",
        ):
            await self._connection.execute(statement)

    async def create_task(self, handler_name: str, payload: dict[str, Any] | None = None) -> Task:
        self._check_connected()
        payload_json = self._encode(payload or {})
        now = _millis(utc_now())

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                INSERT INTO tasks (handler_name, status, payload, created_at, updated_at)
                VALUES (?, 'PENDING', ?, ?, ?)
                RETURNING {_TASK_COLUMNS}
            """,
                (handler_name, payload_json, now, now),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_task(row)

    async def add_dependency(self, task_id: int, dependency_id: int) -> None:
        self._check_connected()
        if task_id == dependency_id:
            raise StorageError(f"Task {task_id} cannot depend on itself")

        async with self._lock:
            try:
                # OR IGNORE covers the UNIQUE pair only; foreign keys still raise
                await self._connection.execute(
                    """
                    INSERT OR IGNORE INTO task_dependencies (task_id, dependency_id)
                    VALUES (?, ?)
                """,
                    (task_id, dependency_id),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(
                    f"Cannot add dependency {task_id} -> {dependency_id}: {e}"
                ) from e

    async def get_task(self, task_id: int) -> Task | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_task(row) if row else None

    async def get_task_with_dependencies(self, task_id: int) -> TaskWithDependencies | None:
        """Load the task row and its dependency rows with one query.

        The first column tags each row: 0 for the task itself, 1 for a dependency.
        """
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                SELECT 0 AS kind, {_TASK_COLUMNS} FROM tasks WHERE id = ?
                UNION ALL
                SELECT 1 AS kind, t.id, t.handler_name, t.status, t.payload,
                       t.created_at, t.updated_at, t.completed_at
                FROM task_dependencies d
                JOIN tasks t ON t.id = d.dependency_id
                WHERE d.task_id = ?
                ORDER BY kind, id
            """,
                (task_id, task_id),
            )
            rows = await cursor.fetchall()
            await cursor.close()

        if not rows or rows[0][0] != 0:
            return None
        task = self._row_to_task(rows[0][1:])
        dependencies = [self._row_to_task(row[1:]) for row in rows[1:]]
        return TaskWithDependencies(task=task, dependencies=dependencies)

    async def get_dependents(self, task_id: int) -> list[Task]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT t.id, t.handler_name, t.status, t.payload,
                       t.created_at, t.updated_at, t.completed_at
                FROM task_dependencies d
                JOIN tasks t ON t.id = d.task_id
                WHERE d.dependency_id = ?
                ORDER BY t.id ASC
            """,
                (task_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        self._check_connected()
        async with self._lock:
            if status is None:
                cursor = await self._connection.execute(
                    f"SELECT {_TASK_COLUMNS} FROM tasks ORDER BY id ASC"
                )
            else:
                cursor = await self._connection.execute(
                    f"SELECT {_TASK_COLUMNS} FROM tasks WHERE status = ? ORDER BY id ASC",
                    (status.value,),
                )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_task(row) for row in rows]

    async def find_ready_tasks(
        self, policy: ReadinessPolicy = ReadinessPolicy.TERMINAL
    ) -> list[Task]:
        self._check_connected()
        satisfied = [s.value for s in policy.satisfied_by]
        placeholders = ", ".join("?" for _ in satisfied)

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                SELECT {_TASK_COLUMNS}
                FROM tasks
                WHERE status IN ('PENDING', 'IN_PROGRESS')
                  AND NOT EXISTS (
                      SELECT 1
                      FROM task_dependencies d
                      JOIN tasks dep ON dep.id = d.dependency_id
                      WHERE d.task_id = tasks.id
                        AND dep.status NOT IN ({placeholders})
                  )
                ORDER BY id ASC
            """,
                satisfied,
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_task(row) for row in rows]

    async def count_by_status(self) -> TaskSummary:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT status, COUNT(*) FROM tasks GROUP BY status"
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return TaskSummary.from_counts({TaskStatus(status): count for status, count in rows})

    async def transition_status(
        self,
        task_id: int,
        from_status: TaskStatus,
        to_status: TaskStatus,
        payload_patch: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-set status update.

        Design Pattern: Optimistic Concurrency Control
        UPDATE with WHERE status = ? ensures only one caller performs each
        transition; rowcount tells us whether we won.
        """
        self._check_connected()
        check_transition(from_status, to_status)
        patch_json = self._encode(payload_patch or {})
        now = _millis(utc_now())
        completed_at = now if to_status is TaskStatus.COMPLETED else None

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    """
                    UPDATE tasks
                    SET status = ?,
                        payload = json_patch(payload, ?),
                        updated_at = ?,
                        completed_at = COALESCE(?, completed_at)
                    WHERE id = ? AND status = ?
                """,
                    (to_status.value, patch_json, now, completed_at, task_id, from_status.value),
                )
            except aiosqlite.OperationalError as e:
                # json_patch rejects a corrupt stored payload
                raise StorageError(f"Cannot update task {task_id}: {e}") from e
            changed = cursor.rowcount > 0
            await cursor.close()
        return changed

    async def merge_payload(self, task_id: int, patch: dict[str, Any]) -> Task:
        self._check_connected()
        patch_json = self._encode(patch)
        now = _millis(utc_now())

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    f"""
                    UPDATE tasks
                    SET payload = json_patch(payload, ?),
                        updated_at = ?
                    WHERE id = ?
                    RETURNING {_TASK_COLUMNS}
                """,
                    (patch_json, now, task_id),
                )
            except aiosqlite.OperationalError as e:
                raise StorageError(f"Cannot update task {task_id}: {e}") from e
            row = await cursor.fetchone()
            await cursor.close()

        if row is None:
            raise StorageError(f"Task not found: {task_id}")
        return self._row_to_task(row)

    async def delete_orphaned_tasks(self) -> list[int]:
        """Delete orphaned terminal tasks with a single statement.

        Only terminal rows are deleted, so the NOT EXISTS check against
        non-terminal dependents is unaffected by rows removed earlier in the
        same statement. Foreign keys cascade the edges.
        """
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                """
                DELETE FROM tasks
                WHERE status IN (?, ?)
                  AND NOT EXISTS (
                      SELECT 1
                      FROM task_dependencies d
                      JOIN tasks dependent ON dependent.id = d.task_id
                      WHERE d.dependency_id = tasks.id
                        AND dependent.status NOT IN (?, ?)
                  )
                RETURNING id
            """,
                (*_TERMINAL, *_TERMINAL),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return sorted(row[0] for row in rows)

    async def reset(self) -> None:
        """Clear all data (for testing/demos).

        After reset, storage is empty but functional.
        """
        self._check_connected()
        async with self._lock:
            await self._connection.execute("DELETE FROM task_dependencies")
            await self._connection.execute("DELETE FROM tasks")
            await self._connection.execute("DELETE FROM sqlite_sequence WHERE name = 'tasks'")

    async def close(self) -> None:
        """Close the connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _encode(payload: dict[str, Any]) -> str:
        try:
            return encode_payload(payload)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Payload is not JSON-serializable: {e}") from e

    def _row_to_task(self, row: tuple) -> Task:
        """Convert database row to Task.

        Row format (matches _TASK_COLUMNS):
        0:id, 1:handler_name, 2:status, 3:payload, 4:created_at,
        5:updated_at, 6:completed_at
        """
        payload_error = None
        try:
            payload = decode_payload(row[3])
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Corrupt payload for task {row[0]}: {e}")
            payload = {}
            payload_error = str(e)

        return Task(
            id=row[0],
            handler_name=row[1],
            status=TaskStatus(row[2]),
            payload=payload,
            created_at=_from_millis(row[4]),
            updated_at=_from_millis(row[5]),
            completed_at=_from_millis(row[6]),
            payload_error=payload_error,
        )
