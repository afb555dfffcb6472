"""
ExecutionLog protocol - Abstract interface for storage backends.

Design Pattern: Adapter Pattern
ExecutionLog defines the target interface that all storage adapters implement.
Different storage backends (SQLite, Redis, Memory) adapt to this common interface.

Design Principle: Dependency Inversion
The orchestrator, client and worker depend on this abstraction, not on
concrete storage implementations. Tests substitute InMemoryExecutionLog.

The log holds three kinds of records:
- Executions: one per execution id, with the replay lease and wake-up time
- Operations: the ordered operation history of each execution
- Callback tokens: correlation handles for external signals

Every method that records a time takes `now` explicitly. Storage never reads
the wall clock, so an injected engine clock governs all deadlines.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Protocol, runtime_checkable

from pydurable.models import (
    CallbackStatus,
    CallbackToken,
    ErrorObject,
    Execution,
    ExecutionStatus,
    Operation,
    TimerInfo,
)


class StorageError(Exception):
    """
    Storage operation failed.

    Custom exception with context, not generic Exception. Backends wrap
    driver errors in it so callers handle one type.
    """

    pass


class LeaseLostError(StorageError):
    """
    A replay tried to write after its lease was taken over or released.

    The lease is identified by the replay_count the claim set. Stale lease
    recovery followed by a new claim invalidates the old replay's writes.
    """

    pass


def check_lease(execution: Execution, lease: int | None) -> None:
    """Raise LeaseLostError unless `lease` is None or still holds the execution."""
    if lease is None:
        return
    if execution.status != ExecutionStatus.RUNNING or execution.replay_count != lease:
        raise LeaseLostError(
            f"Execution {execution.execution_id}: lease of replay #{lease} lost "
            f"(now {execution.status}, replay #{execution.replay_count})"
        )


class ExecutionLog(ABC):
    """
    Abstract storage interface for durable execution.

    Invariants every backend upholds:
    - create_execution is idempotent by execution id
    - claim_execution / dequeue_execution hand an execution to at most one
      replay at a time (PENDING -> RUNNING is atomic)
    - checkpoint ignores writes over an already-terminal operation
    - get_operations returns operations in first-checkpoint order
    - resolve_callback consumes a token at most once
    - writes carrying a `lease` are rejected with LeaseLostError once that
      claim no longer holds the execution
    """

    # ========================================================================
    # Execution Operations
    # ========================================================================

    @abstractmethod
    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        """
        Create an execution unless one with the same id exists.

        Args:
            execution: New PENDING execution record

        Returns:
            (stored execution, created) - created is False when an execution
            with that id already existed; the existing record is returned
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        """Get an execution by id, or None if it does not exist."""
        pass

    @abstractmethod
    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        """List executions (optionally filtered by status), oldest first."""
        pass

    @abstractmethod
    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        """
        Atomically move a PENDING execution to RUNNING and take its lease.

        Sets locked_by/locked_at/last_resumed_at, clears resume_requested and
        increments replay_count.

        Returns:
            The claimed execution, or None if it was not PENDING
        """
        pass

    @abstractmethod
    async def dequeue_execution(self, worker_id: str, now: datetime) -> Execution | None:
        """
        Claim the oldest PENDING execution, if any.

        Must be atomic: concurrent workers never claim the same execution.
        """
        pass

    @abstractmethod
    async def suspend_execution(
        self,
        execution_id: str,
        wake_at: datetime | None,
        now: datetime,
        lease: int | None = None,
    ) -> Execution:
        """
        Release the lease of a RUNNING execution and mark it SUSPENDED.

        If a resume was requested while the replay ran, the execution goes
        straight back to PENDING instead, so the signal is not lost.

        Args:
            execution_id: Execution to suspend
            wake_at: Earliest deadline that should resume it (None: signal only)
            now: Current engine time
            lease: replay_count of the claim making the write (None: unfenced)

        Raises:
            LeaseLostError: If `lease` no longer holds the execution
        """
        pass

    @abstractmethod
    async def resume_execution(self, execution_id: str, now: datetime) -> bool:
        """
        Make a suspended execution runnable again.

        SUSPENDED -> PENDING (wake_at cleared, work notified). For a RUNNING
        execution, records resume_requested so the replay that is in flight
        re-queues it when it suspends.

        Returns:
            True if the execution will replay again, False if it is terminal,
            already PENDING or does not exist
        """
        pass

    @abstractmethod
    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        now: datetime,
        output: bytes | None = None,
        error: ErrorObject | None = None,
        lease: int | None = None,
    ) -> Execution:
        """
        Record a terminal status and release the lease.

        Raises:
            StorageError: If the execution does not exist or status is not terminal
            LeaseLostError: If `lease` no longer holds the execution
        """
        pass

    @abstractmethod
    async def renew_lease(self, execution_id: str, lease: int, now: datetime) -> bool:
        """
        Refresh locked_at of a RUNNING execution still held by `lease`.

        Called periodically while a replay runs, so a long step is not
        mistaken for a dead worker.

        Returns:
            False if the lease was lost
        """
        pass

    @abstractmethod
    async def recover_stale_executions(self, locked_before: datetime, now: datetime) -> int:
        """
        Return RUNNING executions whose lease predates `locked_before` to PENDING.

        Used by workers to recover executions whose replay died with its process.

        Returns:
            Number of executions recovered
        """
        pass

    # ========================================================================
    # Timer Operations
    # ========================================================================

    @abstractmethod
    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        """Get SUSPENDED executions whose wake_at has passed, earliest first."""
        pass

    @abstractmethod
    async def get_next_timer_fire_time(self) -> datetime | None:
        """
        Get the earliest wake_at among SUSPENDED executions.

        Used by the worker's timer loop to sleep until the next timer
        instead of polling.
        """
        pass

    # ========================================================================
    # Operation Log
    # ========================================================================

    @abstractmethod
    async def checkpoint(
        self, execution_id: str, operation: Operation, lease: int | None = None
    ) -> Operation:
        """
        Durably record one operation transition.

        A write over an operation that is already SUCCEEDED or FAILED is
        ignored, and the stored terminal record is returned. The first write
        of an operation fixes its position in the history.

        Writes from outside a replay (signal delivery) pass no lease.

        Returns:
            The operation as stored after the write

        Raises:
            LeaseLostError: If `lease` no longer holds the execution
        """
        pass

    @abstractmethod
    async def get_operation(self, execution_id: str, operation_id: str) -> Operation | None:
        """Get one operation by id."""
        pass

    @abstractmethod
    async def get_operations(self, execution_id: str) -> list[Operation]:
        """Get the full operation history of an execution, in checkpoint order."""
        pass

    # ========================================================================
    # Callback Tokens
    # ========================================================================

    @abstractmethod
    async def register_callback(self, token: CallbackToken) -> CallbackToken:
        """Store a new OPEN callback token (idempotent by callback_id)."""
        pass

    @abstractmethod
    async def get_callback(self, callback_id: str) -> CallbackToken | None:
        """Get a callback token by id."""
        pass

    @abstractmethod
    async def heartbeat_callback(self, callback_id: str, now: datetime) -> CallbackToken | None:
        """
        Extend the heartbeat deadline of an OPEN token to now + heartbeat_timeout.

        Returns:
            The updated token, or None if the token is missing or no longer OPEN
        """
        pass

    @abstractmethod
    async def resolve_callback(
        self,
        callback_id: str,
        status: CallbackStatus,
        now: datetime,
        result: bytes | None = None,
        error: ErrorObject | None = None,
    ) -> bool:
        """
        Atomically consume an OPEN token, storing the signal outcome on it.

        Returns:
            True if this call consumed the token, False if it was already
            resolved (or does not exist)
        """
        pass

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        """
        Delete all stored data.

        Used by tests and examples to start from a clean slate.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support reset")

    async def close(self) -> None:
        """Release connections and other resources."""
        pass


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Storage backends that can wake workers when work becomes available.

    Contract:
    Implementations call `event.set()` whenever an execution becomes PENDING
    (creation, resume, stale-lease recovery). Workers clear the event and
    re-check the queue.

    Worker usage:
        ```python
        if isinstance(storage, WorkNotificationSource):
            await asyncio.wait_for(storage.work_notify().wait(), timeout=poll_interval)
        ```
    """

    def work_notify(self) -> asyncio.Event:
        """Return event that signals when work becomes available."""
        ...


@runtime_checkable
class TimerNotificationSource(Protocol):
    """
    Storage backends that can wake timer processing when wake-up times change.

    Contract:
    Implementations call `event.set()` when an execution suspends with a
    wake_at, so the timer loop can recalculate how long to sleep.
    """

    def timer_notify(self) -> asyncio.Event:
        """Return event that signals when timer state changes."""
        ...
