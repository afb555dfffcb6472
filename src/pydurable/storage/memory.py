"""In-memory storage implementation for pydurable.

Design Pattern: Adapter Pattern
InMemoryExecutionLog adapts in-memory dictionaries to the ExecutionLog interface.

Instance is immediately usable after __init__. Records are frozen
dataclasses, so they are stored as-is and replaced on every transition.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from pydurable.models import (
    CallbackStatus,
    CallbackToken,
    ErrorObject,
    Execution,
    ExecutionStatus,
    Operation,
    TimerInfo,
)
from pydurable.storage.base import ExecutionLog, StorageError, check_lease

logger = logging.getLogger(__name__)


class InMemoryExecutionLog(ExecutionLog):
    """In-memory storage for testing.

    Can be substituted for SqliteExecutionLog without changing client code.

    Usage:
        storage = InMemoryExecutionLog()
        client = DurableClient(storage, registry)
    """

    def __init__(self):
        """Initialize in-memory storage with notification support.

        Creates notification events for:
        - work_notify: Wake workers when an execution becomes PENDING
        - timer_notify: Wake timer processing when a wake-up time is stored
        """
        # Storage: {execution_id: Execution}, insertion order = creation order
        self._executions: dict[str, Execution] = {}

        # Storage: {execution_id: {operation_id: Operation}}, insertion order = history order
        self._operations: dict[str, dict[str, Operation]] = {}

        # Storage: {callback_id: CallbackToken}
        self._callbacks: dict[str, CallbackToken] = {}

        self._lock = asyncio.Lock()

        # Notification events (implements WorkNotificationSource and TimerNotificationSource)
        self._work_notify = asyncio.Event()
        self._timer_notify = asyncio.Event()

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        return "InMemoryExecutionLog"

    def _require(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise StorageError(f"Execution not found: {execution_id}")
        return execution

    # ========================================================================
    # Executions
    # ========================================================================

    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        async with self._lock:
            existing = self._executions.get(execution.execution_id)
            if existing is not None:
                return existing, False

            self._executions[execution.execution_id] = execution
            self._operations.setdefault(execution.execution_id, {})

        if execution.status == ExecutionStatus.PENDING:
            self._work_notify.set()
        return execution, True

    async def get_execution(self, execution_id: str) -> Execution | None:
        async with self._lock:
            return self._executions.get(execution_id)

    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        async with self._lock:
            return [e for e in self._executions.values() if status is None or e.status == status]

    def _claim(self, execution: Execution, worker_id: str, now: datetime) -> Execution:
        claimed = execution.update(
            status=ExecutionStatus.RUNNING,
            locked_by=worker_id,
            locked_at=now,
            last_resumed_at=now,
            updated_at=now,
            resume_requested=False,
            wake_at=None,
            replay_count=execution.replay_count + 1,
        )
        self._executions[execution.execution_id] = claimed
        return claimed

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatus.PENDING:
                return None
            return self._claim(execution, worker_id, now)

    async def dequeue_execution(self, worker_id: str, now: datetime) -> Execution | None:
        async with self._lock:
            for execution in self._executions.values():
                if execution.status == ExecutionStatus.PENDING:
                    return self._claim(execution, worker_id, now)
            return None

    async def suspend_execution(
        self,
        execution_id: str,
        wake_at: datetime | None,
        now: datetime,
        lease: int | None = None,
    ) -> Execution:
        async with self._lock:
            execution = self._require(execution_id)
            check_lease(execution, lease)
            if execution.resume_requested:
                status = ExecutionStatus.PENDING
            else:
                status = ExecutionStatus.SUSPENDED
            suspended = execution.update(
                status=status,
                wake_at=wake_at if status == ExecutionStatus.SUSPENDED else None,
                locked_by=None,
                locked_at=None,
                resume_requested=False,
                updated_at=now,
            )
            self._executions[execution_id] = suspended

        if status == ExecutionStatus.PENDING:
            self._work_notify.set()
        elif wake_at is not None:
            self._timer_notify.set()
        return suspended

    async def resume_execution(self, execution_id: str, now: datetime) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return False
            if execution.status == ExecutionStatus.RUNNING:
                self._executions[execution_id] = execution.update(resume_requested=True)
                return True
            if execution.status != ExecutionStatus.SUSPENDED:
                return False
            self._executions[execution_id] = execution.update(
                status=ExecutionStatus.PENDING, wake_at=None, updated_at=now
            )

        self._work_notify.set()
        return True

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
        async with self._lock:
            execution = self._require(execution_id)
            check_lease(execution, lease)
            completed = execution.update(
                status=status,
                output=output,
                error=error,
                completed_at=now,
                updated_at=now,
                wake_at=None,
                locked_by=None,
                locked_at=None,
                resume_requested=False,
            )
            self._executions[execution_id] = completed
            return completed

    async def renew_lease(self, execution_id: str, lease: int, now: datetime) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if (
                execution is None
                or execution.status != ExecutionStatus.RUNNING
                or execution.replay_count != lease
            ):
                return False
            self._executions[execution_id] = execution.update(locked_at=now)
            return True

    async def recover_stale_executions(self, locked_before: datetime, now: datetime) -> int:
        recovered = 0
        async with self._lock:
            for execution_id, execution in list(self._executions.items()):
                if (
                    execution.status == ExecutionStatus.RUNNING
                    and execution.locked_at is not None
                    and execution.locked_at < locked_before
                ):
                    self._executions[execution_id] = execution.update(
                        status=ExecutionStatus.PENDING,
                        locked_by=None,
                        locked_at=None,
                        updated_at=now,
                    )
                    recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stale execution(s)")
            self._work_notify.set()
        return recovered

    # ========================================================================
    # Timers
    # ========================================================================

    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        async with self._lock:
            expired = [
                TimerInfo(execution_id=e.execution_id, fire_at=e.wake_at)
                for e in self._executions.values()
                if e.status == ExecutionStatus.SUSPENDED
                and e.wake_at is not None
                and e.wake_at <= now
            ]
        expired.sort(key=lambda t: t.fire_at)
        return expired

    async def get_next_timer_fire_time(self) -> datetime | None:
        async with self._lock:
            wake_times = [
                e.wake_at
                for e in self._executions.values()
                if e.status == ExecutionStatus.SUSPENDED and e.wake_at is not None
            ]
        return min(wake_times) if wake_times else None

    # ========================================================================
    # Operation Log
    # ========================================================================

    async def checkpoint(
        self, execution_id: str, operation: Operation, lease: int | None = None
    ) -> Operation:
        async with self._lock:
            check_lease(self._require(execution_id), lease)
            history = self._operations.setdefault(execution_id, {})
            existing = history.get(operation.operation_id)
            if existing is not None and existing.is_terminal:
                # Duplicate write for a settled operation (replayed checkpoint)
                return existing
            history[operation.operation_id] = operation
            return operation

    async def get_operation(self, execution_id: str, operation_id: str) -> Operation | None:
        async with self._lock:
            return self._operations.get(execution_id, {}).get(operation_id)

    async def get_operations(self, execution_id: str) -> list[Operation]:
        async with self._lock:
            return list(self._operations.get(execution_id, {}).values())

    # ========================================================================
    # Callbacks
    # ========================================================================

    async def register_callback(self, token: CallbackToken) -> CallbackToken:
        async with self._lock:
            existing = self._callbacks.get(token.callback_id)
            if existing is not None:
                return existing
            self._callbacks[token.callback_id] = token
            return token

    async def get_callback(self, callback_id: str) -> CallbackToken | None:
        async with self._lock:
            return self._callbacks.get(callback_id)

    async def heartbeat_callback(self, callback_id: str, now: datetime) -> CallbackToken | None:
        async with self._lock:
            token = self._callbacks.get(callback_id)
            if token is None or not token.is_open:
                return None
            if token.heartbeat_timeout is not None:
                token = token.update(heartbeat_deadline=now + token.heartbeat_timeout)
                self._callbacks[callback_id] = token
            return token

    async def resolve_callback(
        self,
        callback_id: str,
        status: CallbackStatus,
        now: datetime,
        result: bytes | None = None,
        error: ErrorObject | None = None,
    ) -> bool:
        async with self._lock:
            token = self._callbacks.get(callback_id)
            if token is None or not token.is_open:
                return False
            self._callbacks[callback_id] = token.update(
                status=status, resolved_at=now, result=result, error=error
            )
            return True

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        async with self._lock:
            self._executions.clear()
            self._operations.clear()
            self._callbacks.clear()

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications."""
        return self._work_notify

    def timer_notify(self) -> asyncio.Event:
        """Return event for timer notifications."""
        return self._timer_notify
