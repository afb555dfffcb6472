"""SQLite-backed storage implementation for pydurable.

Design Pattern: Adapter Pattern
SqliteExecutionLog adapts a SQLite database to the ExecutionLog interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Atomic UPDATE ... RETURNING for lease claims (one winner per execution)
- UPSERT guarded by status for checkpoints (terminal rows never change)
- INTEGER timestamps (milliseconds since the epoch, UTC)
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from pydurable.models import (
    CallbackStatus,
    CallbackToken,
    ErrorCategory,
    ErrorObject,
    Execution,
    ExecutionStatus,
    Operation,
    OperationStatus,
    OperationType,
    TimerInfo,
)
from pydurable.storage.base import ExecutionLog, StorageError, check_lease

logger = logging.getLogger(__name__)

_EXECUTION_COLUMNS = (
    "execution_id, workflow_name, workflow_version, input, status, output, "
    "error_type, error_message, error_data, error_category, "
    "created_at, last_resumed_at, updated_at, completed_at, wake_at, "
    "locked_by, locked_at, resume_requested, replay_count"
)

_OPERATION_COLUMNS = (
    "execution_id, operation_id, name, operation_type, parent_id, sub_type, "
    "sequence, status, attempt, result, "
    "error_type, error_message, error_data, error_category, "
    "started_at, ended_at, fire_at, callback_id, details"
)

_CALLBACK_COLUMNS = (
    "callback_id, execution_id, operation_id, operation_name, status, "
    "timeout_at, heartbeat_timeout_ms, heartbeat_deadline, created_at, resolved_at, "
    "result, error_type, error_message, error_data, error_category"
)

# A NULL lease is an unfenced write; otherwise the claim must still hold the row
_LEASE_GUARD = "(? IS NULL OR (status = 'RUNNING' AND replay_count = ?))"


_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _to_millis(value: datetime | None) -> int | None:
    if value is None:
        return None
    return (value - _EPOCH) // timedelta(milliseconds=1)


def _from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _EPOCH + timedelta(milliseconds=value)


def _error_columns(error: ErrorObject | None) -> tuple[Any, Any, Any, Any]:
    if error is None:
        return (None, None, None, None)
    return (error.error_type, error.message, error.data, error.category.value)


def _error_from_columns(
    error_type: str | None, message: str | None, data: bytes | None, category: str | None
) -> ErrorObject | None:
    if error_type is None:
        return None
    return ErrorObject(
        error_type=error_type,
        message=message or "",
        data=data,
        category=ErrorCategory(category) if category else ErrorCategory.PERMANENT,
    )


class SqliteExecutionLog(ExecutionLog):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.
    This follows asyncio best practices (no async in __init__).

    Usage:
        storage = SqliteExecutionLog("executions.db")
        await storage.connect()
        try:
            client = DurableClient(storage, registry)
        finally:
            await storage.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage with notification support (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

        # Notification events (implements WorkNotificationSource and TimerNotificationSource)
        self._work_notify = asyncio.Event()
        self._timer_notify = asyncio.Event()

    @classmethod
    async def in_memory(cls) -> SqliteExecutionLog:
        """
        Create an in-memory SQLite storage for testing.

        Example:
            storage = await SqliteExecutionLog.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        if self.db_path == ":memory:":
            return "SqliteExecutionLog(in-memory)"
        return f"SqliteExecutionLog({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

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
                self.db_path,
                timeout=5.0,
                isolation_level=None,  # Autocommit mode for better concurrency
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

            await self._create_schema()
            await self._connection.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to open {self.db_path}: {e}") from e

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - executions: one row per execution, carries the replay lease
        - operations: operation history; rowid order is checkpoint order
        - callbacks: callback tokens
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                workflow_version TEXT NOT NULL,
                input BLOB NOT NULL,
                status TEXT CHECK( status IN (
                    'PENDING','RUNNING','SUSPENDED','SUCCEEDED','FAILED','TIMED_OUT'
                ) ) NOT NULL,
                output BLOB,
                error_type TEXT,
                error_message TEXT,
                error_data BLOB,
                error_category TEXT,
                created_at INTEGER,
                last_resumed_at INTEGER,
                updated_at INTEGER,
                completed_at INTEGER,
                wake_at INTEGER,
                locked_by TEXT,
                locked_at INTEGER,
                resume_requested INTEGER NOT NULL DEFAULT 0,
                replay_count INTEGER NOT NULL DEFAULT 0
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_status
            ON executions(status, created_at)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_timers
            ON executions(status, wake_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS operations (
                execution_id TEXT NOT NULL,
                operation_id TEXT NOT NULL,
                name TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                parent_id TEXT,
                sub_type TEXT,
                sequence INTEGER NOT NULL DEFAULT 0,
                status TEXT CHECK( status IN (
                    'PENDING','RUNNING','WAITING','SUCCEEDED','FAILED'
                ) ) NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                result BLOB,
                error_type TEXT,
                error_message TEXT,
                error_data BLOB,
                error_category TEXT,
                started_at INTEGER,
                ended_at INTEGER,
                fire_at INTEGER,
                callback_id TEXT,
                details TEXT,
                PRIMARY KEY (execution_id, operation_id)
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS callbacks (
                callback_id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                operation_id TEXT NOT NULL,
                operation_name TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'OPEN','SUCCEEDED','FAILED','TIMED_OUT'
                ) ) NOT NULL,
                timeout_at INTEGER,
                heartbeat_timeout_ms INTEGER,
                heartbeat_deadline INTEGER,
                created_at INTEGER,
                resolved_at INTEGER,
                result BLOB,
                error_type TEXT,
                error_message TEXT,
                error_data BLOB,
                error_category TEXT
            )
        """)

    # ========================================================================
    # Executions
    # ========================================================================

    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                INSERT INTO executions ({_EXECUTION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(execution_id) DO NOTHING
                """,
                self._execution_params(execution),
            )
            created = cursor.rowcount == 1
            await self._connection.commit()

            if not created:
                stored = await self._fetch_execution(execution.execution_id)
                return stored, False

        if execution.status == ExecutionStatus.PENDING:
            self._work_notify.set()
        return execution, True

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        return await self._fetch_execution(execution_id)

    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        self._check_connected()

        if status is None:
            cursor = await self._connection.execute(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions ORDER BY created_at, rowid"
            )
        else:
            cursor = await self._connection.execute(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM executions
                WHERE status = ?
                ORDER BY created_at, rowid
                """,
                (status.value,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_execution(row) for row in rows]

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        """Claim one PENDING execution.

        Design Pattern: Optimistic Concurrency Control
        UPDATE with WHERE status = 'PENDING' ensures only one replay claims it.
        """
        self._check_connected()
        now_ms = _to_millis(now)

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                UPDATE executions
                SET status = 'RUNNING',
                    locked_by = ?,
                    locked_at = ?,
                    last_resumed_at = ?,
                    updated_at = ?,
                    wake_at = NULL,
                    resume_requested = 0,
                    replay_count = replay_count + 1
                WHERE execution_id = ? AND status = 'PENDING'
                RETURNING {_EXECUTION_COLUMNS}
                """,
                (worker_id, now_ms, now_ms, now_ms, execution_id),
            )
            row = await cursor.fetchone()
            await self._connection.commit()

        return self._row_to_execution(row) if row else None

    async def dequeue_execution(self, worker_id: str, now: datetime) -> Execution | None:
        self._check_connected()
        now_ms = _to_millis(now)

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                UPDATE executions
                SET status = 'RUNNING',
                    locked_by = ?,
                    locked_at = ?,
                    last_resumed_at = ?,
                    updated_at = ?,
                    wake_at = NULL,
                    resume_requested = 0,
                    replay_count = replay_count + 1
                WHERE execution_id = (
                    SELECT execution_id
                    FROM executions
                    WHERE status = 'PENDING'
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT 1
                )
                RETURNING {_EXECUTION_COLUMNS}
                """,
                (worker_id, now_ms, now_ms, now_ms),
            )
            row = await cursor.fetchone()
            await self._connection.commit()

        return self._row_to_execution(row) if row else None

    async def suspend_execution(
        self,
        execution_id: str,
        wake_at: datetime | None,
        now: datetime,
        lease: int | None = None,
    ) -> Execution:
        self._check_connected()

        async with self._lock:
            # A resume that arrived mid-replay sends the execution straight back to the queue
            cursor = await self._connection.execute(
                f"""
                UPDATE executions
                SET status = CASE WHEN resume_requested = 1 THEN 'PENDING' ELSE 'SUSPENDED' END,
                    wake_at = CASE WHEN resume_requested = 1 THEN NULL ELSE ? END,
                    locked_by = NULL,
                    locked_at = NULL,
                    resume_requested = 0,
                    updated_at = ?
                WHERE execution_id = ?
                  AND {_LEASE_GUARD}
                RETURNING {_EXECUTION_COLUMNS}
                """,
                (_to_millis(wake_at), _to_millis(now), execution_id, lease, lease),
            )
            row = await cursor.fetchone()
            await self._connection.commit()
            if row is None:
                await self._raise_missing_or_lost(execution_id, lease)

        execution = self._row_to_execution(row)
        if execution.status == ExecutionStatus.PENDING:
            self._work_notify.set()
        elif wake_at is not None:
            self._timer_notify.set()
        return execution

    async def resume_execution(self, execution_id: str, now: datetime) -> bool:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE executions
                SET status = 'PENDING', wake_at = NULL, updated_at = ?
                WHERE execution_id = ? AND status = 'SUSPENDED'
                """,
                (_to_millis(now), execution_id),
            )
            resumed = cursor.rowcount == 1

            if not resumed:
                cursor = await self._connection.execute(
                    """
                    UPDATE executions
                    SET resume_requested = 1
                    WHERE execution_id = ? AND status = 'RUNNING'
                    """,
                    (execution_id,),
                )
                requested = cursor.rowcount == 1
            else:
                requested = False
            await self._connection.commit()

        if resumed:
            self._work_notify.set()
        return resumed or requested

    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        now: datetime,
        output: bytes | None = None,
        error: ErrorObject | None = None,
        lease: int | None = None,
    ) -> Execution:
        if not status.is_terminal:
            raise StorageError(f"complete_execution requires a terminal status, got {status}")
        self._check_connected()
        now_ms = _to_millis(now)

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                UPDATE executions
                SET status = ?,
                    output = ?,
                    error_type = ?, error_message = ?, error_data = ?, error_category = ?,
                    completed_at = ?,
                    updated_at = ?,
                    wake_at = NULL,
                    locked_by = NULL,
                    locked_at = NULL,
                    resume_requested = 0
                WHERE execution_id = ?
                  AND {_LEASE_GUARD}
                RETURNING {_EXECUTION_COLUMNS}
                """,
                (
                    status.value,
                    output,
                    *_error_columns(error),
                    now_ms,
                    now_ms,
                    execution_id,
                    lease,
                    lease,
                ),
            )
            row = await cursor.fetchone()
            await self._connection.commit()
            if row is None:
                await self._raise_missing_or_lost(execution_id, lease)
        return self._row_to_execution(row)

    async def renew_lease(self, execution_id: str, lease: int, now: datetime) -> bool:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE executions
                SET locked_at = ?
                WHERE execution_id = ? AND status = 'RUNNING' AND replay_count = ?
                """,
                (_to_millis(now), execution_id, lease),
            )
            renewed = cursor.rowcount == 1
            await self._connection.commit()
        return renewed

    async def recover_stale_executions(self, locked_before: datetime, now: datetime) -> int:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE executions
                SET status = 'PENDING', locked_by = NULL, locked_at = NULL, updated_at = ?
                WHERE status = 'RUNNING' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (_to_millis(now), _to_millis(locked_before)),
            )
            recovered = cursor.rowcount
            await self._connection.commit()

        if recovered:
            logger.warning(f"Recovered {recovered} stale execution(s)")
            self._work_notify.set()
        return recovered

    # ========================================================================
    # Timers
    # ========================================================================

    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        self._check_connected()

        cursor = await self._connection.execute(
            """
            SELECT execution_id, wake_at
            FROM executions
            WHERE status = 'SUSPENDED' AND wake_at IS NOT NULL AND wake_at <= ?
            ORDER BY wake_at ASC
            """,
            (_to_millis(now),),
        )
        rows = await cursor.fetchall()
        return [TimerInfo(execution_id=row[0], fire_at=_from_millis(row[1])) for row in rows]

    async def get_next_timer_fire_time(self) -> datetime | None:
        self._check_connected()

        cursor = await self._connection.execute(
            """
            SELECT MIN(wake_at)
            FROM executions
            WHERE status = 'SUSPENDED' AND wake_at IS NOT NULL
            """
        )
        row = await cursor.fetchone()
        return _from_millis(row[0]) if row and row[0] is not None else None

    # ========================================================================
    # Operation Log
    # ========================================================================

    async def checkpoint(
        self, execution_id: str, operation: Operation, lease: int | None = None
    ) -> Operation:
        """Record one operation transition.

        UPSERT keeps the original rowid, so the history stays in
        first-checkpoint order. The WHERE clause makes terminal rows immutable.
        """
        self._check_connected()

        async with self._lock:
            execution = await self._fetch_execution(execution_id)
            if execution is None:
                raise StorageError(f"Execution not found: {execution_id}")
            check_lease(execution, lease)

            await self._connection.execute(
                f"""
                INSERT INTO operations ({_OPERATION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(execution_id, operation_id) DO UPDATE SET
                    status = excluded.status,
                    attempt = excluded.attempt,
                    result = excluded.result,
                    error_type = excluded.error_type,
                    error_message = excluded.error_message,
                    error_data = excluded.error_data,
                    error_category = excluded.error_category,
                    started_at = excluded.started_at,
                    ended_at = excluded.ended_at,
                    fire_at = excluded.fire_at,
                    callback_id = excluded.callback_id,
                    details = excluded.details
                WHERE operations.status NOT IN ('SUCCEEDED', 'FAILED')
                """,
                self._operation_params(execution_id, operation),
            )
            await self._connection.commit()

            stored = await self._fetch_operation(execution_id, operation.operation_id)

        if stored is None:
            raise StorageError(f"Checkpoint of {operation.name!r} was not persisted")
        return stored

    async def get_operation(self, execution_id: str, operation_id: str) -> Operation | None:
        self._check_connected()
        return await self._fetch_operation(execution_id, operation_id)

    async def get_operations(self, execution_id: str) -> list[Operation]:
        self._check_connected()

        cursor = await self._connection.execute(
            f"""
            SELECT {_OPERATION_COLUMNS} FROM operations
            WHERE execution_id = ?
            ORDER BY rowid ASC
            """,
            (execution_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_operation(row) for row in rows]

    # ========================================================================
    # Callbacks
    # ========================================================================

    async def register_callback(self, token: CallbackToken) -> CallbackToken:
        self._check_connected()

        heartbeat_ms = (
            int(token.heartbeat_timeout.total_seconds() * 1000)
            if token.heartbeat_timeout is not None
            else None
        )
        async with self._lock:
            await self._connection.execute(
                f"""
                INSERT INTO callbacks ({_CALLBACK_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(callback_id) DO NOTHING
                """,
                (
                    token.callback_id,
                    token.execution_id,
                    token.operation_id,
                    token.operation_name,
                    token.status.value,
                    _to_millis(token.timeout_at),
                    heartbeat_ms,
                    _to_millis(token.heartbeat_deadline),
                    _to_millis(token.created_at),
                    _to_millis(token.resolved_at),
                    token.result,
                    *_error_columns(token.error),
                ),
            )
            await self._connection.commit()

        stored = await self.get_callback(token.callback_id)
        return stored if stored is not None else token

    async def get_callback(self, callback_id: str) -> CallbackToken | None:
        self._check_connected()

        cursor = await self._connection.execute(
            f"SELECT {_CALLBACK_COLUMNS} FROM callbacks WHERE callback_id = ?",
            (callback_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_callback(row) if row else None

    async def heartbeat_callback(self, callback_id: str, now: datetime) -> CallbackToken | None:
        self._check_connected()
        now_ms = _to_millis(now)

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                UPDATE callbacks
                SET heartbeat_deadline = CASE
                    WHEN heartbeat_timeout_ms IS NULL THEN heartbeat_deadline
                    ELSE ? + heartbeat_timeout_ms
                END
                WHERE callback_id = ? AND status = 'OPEN'
                RETURNING {_CALLBACK_COLUMNS}
                """,
                (now_ms, callback_id),
            )
            row = await cursor.fetchone()
            await self._connection.commit()

        return self._row_to_callback(row) if row else None

    async def resolve_callback(
        self,
        callback_id: str,
        status: CallbackStatus,
        now: datetime,
        result: bytes | None = None,
        error: ErrorObject | None = None,
    ) -> bool:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE callbacks
                SET status = ?, resolved_at = ?, result = ?,
                    error_type = ?, error_message = ?, error_data = ?, error_category = ?
                WHERE callback_id = ? AND status = 'OPEN'
                """,
                (status.value, _to_millis(now), result, *_error_columns(error), callback_id),
            )
            consumed = cursor.rowcount == 1
            await self._connection.commit()
        return consumed

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        """Clear all data (for testing/demos).

        After reset, storage is empty but functional.
        """
        self._check_connected()

        async with self._lock:
            await self._connection.execute("DELETE FROM operations")
            await self._connection.execute("DELETE FROM callbacks")
            await self._connection.execute("DELETE FROM executions")
            await self._connection.commit()

    async def close(self) -> None:
        """Close storage connections.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify

    def timer_notify(self) -> asyncio.Event:
        """Return event for timer notifications (TimerNotificationSource protocol)."""
        return self._timer_notify

    # ========================================================================
    # Helpers
    # ========================================================================

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def _fetch_execution(self, execution_id: str) -> Execution | None:
        cursor = await self._connection.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE execution_id = ?",
            (execution_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_execution(row) if row else None

    async def _raise_missing_or_lost(self, execution_id: str, lease: int | None) -> None:
        """Explain why a guarded UPDATE matched no row."""
        execution = await self._fetch_execution(execution_id)
        if execution is None:
            raise StorageError(f"Execution not found: {execution_id}")
        check_lease(execution, lease)
        raise StorageError(f"Update of execution {execution_id} matched no row")

    async def _fetch_operation(self, execution_id: str, operation_id: str) -> Operation | None:
        cursor = await self._connection.execute(
            f"""
            SELECT {_OPERATION_COLUMNS} FROM operations
            WHERE execution_id = ? AND operation_id = ?
            """,
            (execution_id, operation_id),
        )
        row = await cursor.fetchone()
        return self._row_to_operation(row) if row else None

    @staticmethod
    def _execution_params(execution: Execution) -> tuple:
        return (
            execution.execution_id,
            execution.workflow_name,
            execution.workflow_version,
            execution.input,
            execution.status.value,
            execution.output,
            *_error_columns(execution.error),
            _to_millis(execution.created_at),
            _to_millis(execution.last_resumed_at),
            _to_millis(execution.updated_at),
            _to_millis(execution.completed_at),
            _to_millis(execution.wake_at),
            execution.locked_by,
            _to_millis(execution.locked_at),
            1 if execution.resume_requested else 0,
            execution.replay_count,
        )

    @staticmethod
    def _operation_params(execution_id: str, op: Operation) -> tuple:
        return (
            execution_id,
            op.operation_id,
            op.name,
            op.operation_type.value,
            op.parent_id,
            op.sub_type,
            op.sequence,
            op.status.value,
            op.attempt,
            op.result,
            *_error_columns(op.error),
            _to_millis(op.started_at),
            _to_millis(op.ended_at),
            _to_millis(op.fire_at),
            op.callback_id,
            json.dumps(op.details) if op.details else None,
        )

    @staticmethod
    def _row_to_execution(row: tuple) -> Execution:
        """Convert database row to Execution (row order matches _EXECUTION_COLUMNS)."""
        return Execution(
            execution_id=row[0],
            workflow_name=row[1],
            workflow_version=row[2],
            input=row[3],
            status=ExecutionStatus(row[4]),
            output=row[5],
            error=_error_from_columns(row[6], row[7], row[8], row[9]),
            created_at=_from_millis(row[10]),
            last_resumed_at=_from_millis(row[11]),
            updated_at=_from_millis(row[12]),
            completed_at=_from_millis(row[13]),
            wake_at=_from_millis(row[14]),
            locked_by=row[15],
            locked_at=_from_millis(row[16]),
            resume_requested=bool(row[17]),
            replay_count=row[18],
        )

    @staticmethod
    def _row_to_operation(row: tuple) -> Operation:
        """Convert database row to Operation (row order matches _OPERATION_COLUMNS)."""
        return Operation(
            execution_id=row[0],
            operation_id=row[1],
            name=row[2],
            operation_type=OperationType(row[3]),
            parent_id=row[4],
            sub_type=row[5],
            sequence=row[6],
            status=OperationStatus(row[7]),
            attempt=row[8],
            result=row[9],
            error=_error_from_columns(row[10], row[11], row[12], row[13]),
            started_at=_from_millis(row[14]),
            ended_at=_from_millis(row[15]),
            fire_at=_from_millis(row[16]),
            callback_id=row[17],
            details=json.loads(row[18]) if row[18] else {},
        )

    @staticmethod
    def _row_to_callback(row: tuple) -> CallbackToken:
        """Convert database row to CallbackToken (row order matches _CALLBACK_COLUMNS)."""
        return CallbackToken(
            callback_id=row[0],
            execution_id=row[1],
            operation_id=row[2],
            operation_name=row[3],
            status=CallbackStatus(row[4]),
            timeout_at=_from_millis(row[5]),
            heartbeat_timeout=timedelta(milliseconds=row[6]) if row[6] is not None else None,
            heartbeat_deadline=_from_millis(row[7]),
            created_at=_from_millis(row[8]),
            resolved_at=_from_millis(row[9]),
            result=row[10],
            error=_error_from_columns(row[11], row[12], row[13], row[14]),
        )
