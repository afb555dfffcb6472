"""Redis-based execution log implementation.

Provides a Redis backend for distributed execution: workers on separate
machines share one log through the network.

Data Structures:
- pydurable:execution:{id} (STRING): pickled Execution record
- pydurable:executions (ZSET): all execution ids (score = creation time)
- pydurable:queue:pending (LIST): FIFO of execution ids that became PENDING
- pydurable:timers (ZSET): SUSPENDED executions (score = wake_at millis)
- pydurable:ops:{id} (HASH): operation_id -> pickled Operation
- pydurable:ops_order:{id} (LIST): operation ids in first-checkpoint order
- pydurable:callback:{callback_id} (STRING): pickled CallbackToken

Key Features:
- Optimistic transactions: WATCH/MULTI/EXEC for every read-modify-write,
  so two workers never both claim an execution or consume a token
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements ExecutionLog for Redis, adapting a key-value store to the
ExecutionLog interface.
"""

from __future__ import annotations

import asyncio
import logging
import pickle
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

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

_EXECUTIONS_KEY = "pydurable:executions"
_PENDING_KEY = "pydurable:queue:pending"
_TIMERS_KEY = "pydurable:timers"


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RedisExecutionLog(ExecutionLog):
    """Redis execution log using connection pooling.

    All dependencies (Redis connection) passed explicitly.

    Usage:
        storage = RedisExecutionLog("redis://localhost:6379")
        await storage.connect()
        client = DurableClient(storage, registry)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis execution log.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

        self._work_notify = asyncio.Event()
        self._timer_notify = asyncio.Event()

    def __repr__(self) -> str:
        return f"RedisExecutionLog({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # Records are pickled bytes
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Ensure connection established."""
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _execution_key(execution_id: str) -> str:
        return f"pydurable:execution:{execution_id}"

    @staticmethod
    def _ops_key(execution_id: str) -> str:
        return f"pydurable:ops:{execution_id}"

    @staticmethod
    def _ops_order_key(execution_id: str) -> str:
        return f"pydurable:ops_order:{execution_id}"

    @staticmethod
    def _callback_key(callback_id: str) -> str:
        return f"pydurable:callback:{callback_id}"

    async def _transact(self, key: str, apply: Callable[[Any, Any], Awaitable[Any]]) -> Any:
        """
        Run a read-modify-write on `key` under WATCH, retrying on conflict.

        `apply(pipe, raw)` receives the current raw value, must call
        pipe.multi() before queueing writes (or skip writing), and returns
        the method's result.
        """
        self._check_connected()
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        result = await apply(pipe, raw)
                        if pipe.explicit_transaction:
                            await pipe.execute()
                        else:
                            await pipe.unwatch()
                        return result
                    except WatchError:
                        logger.debug(f"Concurrent update of {key}, retrying")
                        continue
        except RedisError as e:
            raise StorageError(f"Redis operation on {key} failed: {e}") from e

    # ========================================================================
    # Executions
    # ========================================================================

    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        key = self._execution_key(execution.execution_id)

        async def apply(pipe, raw):
            if raw is not None:
                return pickle.loads(raw), False
            pipe.multi()
            await pipe.set(key, pickle.dumps(execution))
            created_ms = _millis(execution.created_at or datetime.now(UTC))
            await pipe.zadd(_EXECUTIONS_KEY, {execution.execution_id: created_ms})
            if execution.status == ExecutionStatus.PENDING:
                await pipe.rpush(_PENDING_KEY, execution.execution_id)
            return execution, True

        stored, created = await self._transact(key, apply)
        if created and stored.status == ExecutionStatus.PENDING:
            self._work_notify.set()
        return stored, created

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        raw = await self._redis.get(self._execution_key(execution_id))
        return pickle.loads(raw) if raw is not None else None

    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        self._check_connected()
        ids = await self._redis.zrange(_EXECUTIONS_KEY, 0, -1)
        if not ids:
            return []
        raws = await self._redis.mget([self._execution_key(i.decode()) for i in ids])
        executions = [pickle.loads(raw) for raw in raws if raw is not None]
        return [e for e in executions if status is None or e.status == status]

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        key = self._execution_key(execution_id)

        async def apply(pipe, raw):
            if raw is None:
                return None
            execution: Execution = pickle.loads(raw)
            if execution.status != ExecutionStatus.PENDING:
                return None
            claimed = execution.update(
                status=ExecutionStatus.RUNNING,
                locked_by=worker_id,
                locked_at=now,
                last_resumed_at=now,
                updated_at=now,
                wake_at=None,
                resume_requested=False,
                replay_count=execution.replay_count + 1,
            )
            pipe.multi()
            await pipe.set(key, pickle.dumps(claimed))
            await pipe.zrem(_TIMERS_KEY, execution_id)
            return claimed

        return await self._transact(key, apply)

    async def dequeue_execution(self, worker_id: str, now: datetime) -> Execution | None:
        self._check_connected()
        # The pending list may hold stale ids (already claimed); skip them
        while True:
            raw_id = await self._redis.lpop(_PENDING_KEY)
            if raw_id is None:
                return None
            claimed = await self.claim_execution(raw_id.decode(), worker_id, now)
            if claimed is not None:
                return claimed

    async def suspend_execution(
        self,
        execution_id: str,
        wake_at: datetime | None,
        now: datetime,
        lease: int | None = None,
    ) -> Execution:
        key = self._execution_key(execution_id)

        async def apply(pipe, raw):
            if raw is None:
                raise StorageError(f"Execution not found: {execution_id}")
            execution: Execution = pickle.loads(raw)
            check_lease(execution, lease)
            requeue = execution.resume_requested
            suspended = execution.update(
                status=ExecutionStatus.PENDING if requeue else ExecutionStatus.SUSPENDED,
                wake_at=None if requeue else wake_at,
                locked_by=None,
                locked_at=None,
                resume_requested=False,
                updated_at=now,
            )
            pipe.multi()
            await pipe.set(key, pickle.dumps(suspended))
            if requeue:
                await pipe.rpush(_PENDING_KEY, execution_id)
            elif wake_at is not None:
                await pipe.zadd(_TIMERS_KEY, {execution_id: _millis(wake_at)})
            return suspended

        execution = await self._transact(key, apply)
        if execution.status == ExecutionStatus.PENDING:
            self._work_notify.set()
        elif wake_at is not None:
            self._timer_notify.set()
        return execution

    async def resume_execution(self, execution_id: str, now: datetime) -> bool:
        key = self._execution_key(execution_id)

        async def apply(pipe, raw):
            if raw is None:
                return False, False
            execution: Execution = pickle.loads(raw)
            if execution.status == ExecutionStatus.RUNNING:
                pipe.multi()
                await pipe.set(key, pickle.dumps(execution.update(resume_requested=True)))
                return True, False
            if execution.status != ExecutionStatus.SUSPENDED:
                return False, False
            pipe.multi()
            await pipe.set(
                key,
                pickle.dumps(
                    execution.update(status=ExecutionStatus.PENDING, wake_at=None, updated_at=now)
                ),
            )
            await pipe.zrem(_TIMERS_KEY, execution_id)
            await pipe.rpush(_PENDING_KEY, execution_id)
            return True, True

        will_replay, queued = await self._transact(key, apply)
        if queued:
            self._work_notify.set()
        return will_replay

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
        key = self._execution_key(execution_id)

        async def apply(pipe, raw):
            if raw is None:
                raise StorageError(f"Execution not found: {execution_id}")
            execution: Execution = pickle.loads(raw)
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
            pipe.multi()
            await pipe.set(key, pickle.dumps(completed))
            await pipe.zrem(_TIMERS_KEY, execution_id)
            return completed

        return await self._transact(key, apply)

    async def renew_lease(self, execution_id: str, lease: int, now: datetime) -> bool:
        key = self._execution_key(execution_id)

        async def apply(pipe, raw):
            if raw is None:
                return False
            execution: Execution = pickle.loads(raw)
            if execution.status != ExecutionStatus.RUNNING or execution.replay_count != lease:
                return False
            pipe.multi()
            await pipe.set(key, pickle.dumps(execution.update(locked_at=now)))
            return True

        return await self._transact(key, apply)

    async def recover_stale_executions(self, locked_before: datetime, now: datetime) -> int:
        recovered = 0
        for execution in await self.list_executions(ExecutionStatus.RUNNING):
            if execution.locked_at is None or execution.locked_at >= locked_before:
                continue
            key = self._execution_key(execution.execution_id)

            async def apply(pipe, raw, execution_id=execution.execution_id):
                if raw is None:
                    return False
                current: Execution = pickle.loads(raw)
                if (
                    current.status != ExecutionStatus.RUNNING
                    or current.locked_at is None
                    or current.locked_at >= locked_before
                ):
                    return False
                pipe.multi()
                await pipe.set(
                    key,
                    pickle.dumps(
                        current.update(
                            status=ExecutionStatus.PENDING,
                            locked_by=None,
                            locked_at=None,
                            updated_at=now,
                        )
                    ),
                )
                await pipe.rpush(_PENDING_KEY, execution_id)
                return True

            if await self._transact(key, apply):
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stale execution(s)")
            self._work_notify.set()
        return recovered

    # ========================================================================
    # Timers
    # ========================================================================

    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        self._check_connected()
        expired = await self._redis.zrangebyscore(_TIMERS_KEY, "-inf", _millis(now), withscores=True)
        return [
            TimerInfo(
                execution_id=member.decode(),
                fire_at=datetime.fromtimestamp(score / 1000.0, tz=UTC),
            )
            for member, score in expired
        ]

    async def get_next_timer_fire_time(self) -> datetime | None:
        self._check_connected()
        result = await self._redis.zrange(_TIMERS_KEY, 0, 0, withscores=True)
        if not result:
            return None
        _, score = result[0]
        return datetime.fromtimestamp(score / 1000.0, tz=UTC)

    # ========================================================================
    # Operation Log
    # ========================================================================

    async def checkpoint(
        self, execution_id: str, operation: Operation, lease: int | None = None
    ) -> Operation:
        self._check_connected()
        execution_key = self._execution_key(execution_id)
        ops_key = self._ops_key(execution_id)
        order_key = self._ops_order_key(execution_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        # Watching the execution too rejects a write racing a takeover
                        await pipe.watch(ops_key, execution_key)
                        raw_execution = await pipe.get(execution_key)
                        if raw_execution is None:
                            raise StorageError(f"Execution not found: {execution_id}")
                        check_lease(pickle.loads(raw_execution), lease)
                        raw = await pipe.hget(ops_key, operation.operation_id)
                        if raw is not None:
                            existing: Operation = pickle.loads(raw)
                            if existing.is_terminal:
                                await pipe.unwatch()
                                return existing
                        pipe.multi()
                        await pipe.hset(ops_key, operation.operation_id, pickle.dumps(operation))
                        if raw is None:
                            await pipe.rpush(order_key, operation.operation_id)
                        await pipe.execute()
                        return operation
                    except WatchError:
                        continue
        except RedisError as e:
            raise StorageError(f"Checkpoint of {operation.name!r} failed: {e}") from e

    async def get_operation(self, execution_id: str, operation_id: str) -> Operation | None:
        self._check_connected()
        raw = await self._redis.hget(self._ops_key(execution_id), operation_id)
        return pickle.loads(raw) if raw is not None else None

    async def get_operations(self, execution_id: str) -> list[Operation]:
        self._check_connected()
        order = await self._redis.lrange(self._ops_order_key(execution_id), 0, -1)
        if not order:
            return []
        raws = await self._redis.hmget(self._ops_key(execution_id), order)
        return [pickle.loads(raw) for raw in raws if raw is not None]

    # ========================================================================
    # Callbacks
    # ========================================================================

    async def register_callback(self, token: CallbackToken) -> CallbackToken:
        self._check_connected()
        key = self._callback_key(token.callback_id)
        # SET NX: registration is idempotent by callback_id
        stored = await self._redis.set(key, pickle.dumps(token), nx=True)
        if stored:
            return token
        existing = await self.get_callback(token.callback_id)
        return existing if existing is not None else token

    async def get_callback(self, callback_id: str) -> CallbackToken | None:
        self._check_connected()
        raw = await self._redis.get(self._callback_key(callback_id))
        return pickle.loads(raw) if raw is not None else None

    async def heartbeat_callback(self, callback_id: str, now: datetime) -> CallbackToken | None:
        key = self._callback_key(callback_id)

        async def apply(pipe, raw):
            if raw is None:
                return None
            token: CallbackToken = pickle.loads(raw)
            if not token.is_open:
                return None
            if token.heartbeat_timeout is None:
                return token
            token = token.update(heartbeat_deadline=now + token.heartbeat_timeout)
            pipe.multi()
            await pipe.set(key, pickle.dumps(token))
            return token

        return await self._transact(key, apply)

    async def resolve_callback(
        self,
        callback_id: str,
        status: CallbackStatus,
        now: datetime,
        result: bytes | None = None,
        error: ErrorObject | None = None,
    ) -> bool:
        key = self._callback_key(callback_id)

        async def apply(pipe, raw):
            if raw is None:
                return False
            token: CallbackToken = pickle.loads(raw)
            if not token.is_open:
                return False
            pipe.multi()
            resolved = token.update(status=status, resolved_at=now, result=result, error=error)
            await pipe.set(key, pickle.dumps(resolved))
            return True

        return await self._transact(key, apply)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        """Delete every pydurable key (for testing/demos)."""
        self._check_connected()
        keys = [key async for key in self._redis.scan_iter(match="pydurable:*")]
        if keys:
            await self._redis.delete(*keys)

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications."""
        return self._work_notify

    def timer_notify(self) -> asyncio.Event:
        """Return event for timer notifications."""
        return self._timer_notify
