"""
Client API: start executions, signal callbacks, inspect history.

Design Pattern: Façade
DurableClient hides storage, orchestrator and callback bookkeeping
behind the handful of calls an application makes from outside a workflow.

Usage:
    ```python
    storage = SqliteExecutionLog("durable.db")
    await storage.connect()
    client = DurableClient(storage)

    # Fire and forget; a Worker picks it up
    execution = await client.invoke(onboarding, {"user": "ada"}, execution_name="onboard-ada")

    # Later, from a webhook handler
    await client.send_callback_success(callback_id, {"approved": True})

    result = await client.wait_for_result("onboard-ada", timeout=30)
    ```
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from pydurable.config import EngineConfig
from pydurable.core.identity import new_execution_id, payload_hash
from pydurable.executor.callback import settle_operation
from pydurable.executor.orchestrator import ReplayOrchestrator
from pydurable.models import (
    CallbackStatus,
    ErrorObject,
    Execution,
    ExecutionStatus,
    Operation,
)
from pydurable.models.errors import (
    CallbackNotFoundError,
    CallbackTimeoutError,
    ExecutionConflictError,
    ExecutionNotFoundError,
    ExecutionTimedOutError,
)
from pydurable.registry import Handler, WorkflowDefinition, WorkflowRegistry, default_registry
from pydurable.serdes import SerDes, deserialize, serialize
from pydurable.storage.base import ExecutionLog

logger = logging.getLogger(__name__)


class InvocationMode(Enum):
    """How invoke() waits for the execution."""

    SYNC = "SYNC"
    """Drive replays in this process and return the workflow result."""

    ASYNC = "ASYNC"
    """Create the execution and return it; a Worker runs it."""


class DurableClient:
    """Entry point for applications talking to the durable engine."""

    def __init__(
        self,
        storage: ExecutionLog,
        registry: WorkflowRegistry | None = None,
        config: EngineConfig | None = None,
        client_id: str = "client",
    ):
        self._storage = storage
        self._registry = registry if registry is not None else default_registry
        self._config = config or EngineConfig()
        self._orchestrator = ReplayOrchestrator(storage, self._registry, self._config, client_id)

    @property
    def storage(self) -> ExecutionLog:
        return self._storage

    @property
    def config(self) -> EngineConfig:
        return self._config

    # =========================================================================
    # Invocation
    # =========================================================================

    async def invoke(
        self,
        workflow: str | Handler | WorkflowDefinition,
        payload: Any = None,
        execution_name: str | None = None,
        mode: InvocationMode = InvocationMode.ASYNC,
        timeout: float | None = None,
    ) -> Any:
        """
        Start an execution, idempotently by execution_name.

        Invoking an existing execution name with the same workflow and
        payload returns the existing execution (ASYNC) or its result (SYNC).

        Args:
            workflow: Registered name, decorated handler or WorkflowDefinition
            payload: Workflow input
            execution_name: Idempotency key (default: a generated uuid7)
            mode: ASYNC returns the Execution; SYNC returns the result or raises
            timeout: SYNC only, seconds to wait for a terminal status

        Raises:
            ExecutionConflictError: execution_name exists with a different workflow or payload
        """
        definition = self._registry.resolve(workflow)
        serdes = definition.serdes or self._config.serdes
        data = serialize(payload, serdes)
        execution_id = execution_name or new_execution_id()
        now = self._config.clock()

        execution, created = await self._storage.create_execution(
            Execution(
                execution_id=execution_id,
                workflow_name=definition.name,
                workflow_version=definition.version,
                input=data,
                created_at=now,
                updated_at=now,
            )
        )

        if created:
            logger.info(f"Created execution {execution_id} ({definition.name}@{definition.version})")
        else:
            if execution.workflow_name != definition.name:
                raise ExecutionConflictError(
                    f"Execution {execution_id} already exists for workflow "
                    f"{execution.workflow_name!r}, not {definition.name!r}"
                )
            if payload_hash(execution.input) != payload_hash(data):
                raise ExecutionConflictError(
                    f"Execution {execution_id} already exists with a different payload"
                )
            logger.debug(f"Execution {execution_id} already exists ({execution.status})")

        if mode == InvocationMode.ASYNC:
            return execution

        return await self._drive(execution_id, timeout)

    async def _drive(self, execution_id: str, timeout: float | None) -> Any:
        """Run replays in this process until the execution is terminal."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            execution = await self._require_execution(execution_id)
            if execution.is_terminal:
                return self._result_of(execution)

            now = self._config.clock()
            if execution.status == ExecutionStatus.SUSPENDED and execution.wake_at is not None:
                if execution.wake_at <= now:
                    await self._storage.resume_execution(execution_id, now)
                    continue
            if execution.status == ExecutionStatus.PENDING:
                await self._orchestrator.run(execution_id)
                continue

            if deadline is not None and loop.time() >= deadline:
                raise TimeoutError(f"Execution {execution_id} did not finish within {timeout}s")
            await asyncio.sleep(self._config.poll_interval)

    async def wait_for_result(self, execution_id: str, timeout: float | None = None) -> Any:
        """
        Poll until the execution is terminal and return its result.

        Raises:
            The workflow's error if it FAILED
            ExecutionTimedOutError: the execution exceeded its lifetime
            TimeoutError: `timeout` seconds elapsed first
            ExecutionNotFoundError: no such execution
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            execution = await self._require_execution(execution_id)
            if execution.is_terminal:
                return self._result_of(execution)
            if deadline is not None and loop.time() >= deadline:
                raise TimeoutError(f"Execution {execution_id} did not finish within {timeout}s")
            await asyncio.sleep(self._config.poll_interval)

    def _result_of(self, execution: Execution) -> Any:
        if execution.status == ExecutionStatus.SUCCEEDED:
            definition = self._registry.get(execution.workflow_name)
            serdes = (definition.serdes if definition else None) or self._config.serdes
            return deserialize(execution.output, serdes)
        if execution.error is not None:
            raise execution.error.to_exception()
        raise ExecutionTimedOutError(f"Execution {execution.execution_id} ended {execution.status}")

    # =========================================================================
    # Callback signals
    # =========================================================================

    async def send_callback_success(
        self, callback_id: str, payload: Any = None, serdes: SerDes | None = None
    ) -> bool:
        """
        Complete a callback with a result.

        `serdes` must match the CallbackConfig.serdes the workflow waits with.

        Returns:
            True if the signal consumed the token, False if it was already resolved
            or its deadline had passed

        Raises:
            CallbackNotFoundError: no such callback
        """
        now = self._config.clock()
        if await self._expire_if_due(callback_id, now):
            return False
        data = serialize(payload, serdes or self._config.serdes)
        if not await self._storage.resolve_callback(
            callback_id, CallbackStatus.SUCCEEDED, now, result=data
        ):
            return await self._ignore_signal(callback_id, "success")
        await self._deliver(callback_id, now)
        return True

    async def send_callback_failure(
        self, callback_id: str, error_type: str, message: str, data: bytes | None = None
    ) -> bool:
        """
        Fail a callback. The workflow sees CallbackError(error_type, message).

        Returns:
            True if the signal consumed the token, False if it was already resolved
            or its deadline had passed

        Raises:
            CallbackNotFoundError: no such callback
        """
        now = self._config.clock()
        if await self._expire_if_due(callback_id, now):
            return False
        error = ErrorObject.from_signal(error_type, message, data)
        if not await self._storage.resolve_callback(
            callback_id, CallbackStatus.FAILED, now, error=error
        ):
            return await self._ignore_signal(callback_id, "failure")
        await self._deliver(callback_id, now)
        return True

    async def send_callback_heartbeat(self, callback_id: str) -> bool:
        """
        Extend a callback's heartbeat deadline.

        Returns:
            True if the token is still open, False if it was already resolved
            or its deadline had passed

        Raises:
            CallbackNotFoundError: no such callback
        """
        now = self._config.clock()
        if await self._expire_if_due(callback_id, now):
            return False
        token = await self._storage.heartbeat_callback(callback_id, now)
        if token is None:
            return await self._ignore_signal(callback_id, "heartbeat")
        logger.debug(f"Heartbeat for callback {callback_id}, deadline {token.heartbeat_deadline}")
        await self._storage.resume_execution(token.execution_id, now)
        return True

    async def _expire_if_due(self, callback_id: str, now) -> bool:
        """Time out an open token whose deadline has passed. True if the signal is too late."""
        token = await self._storage.get_callback(callback_id)
        if token is None:
            raise CallbackNotFoundError(f"Callback {callback_id} not found")
        if not token.is_open:
            return False
        reason = token.expired_reason(now)
        if reason is None:
            return False

        timeout = ErrorObject.from_exception(CallbackTimeoutError(token.operation_name, reason))
        if await self._storage.resolve_callback(
            callback_id, CallbackStatus.TIMED_OUT, now, error=timeout
        ):
            logger.warning(f"Rejecting late signal for callback {callback_id}: {reason} passed")
            await self._deliver(callback_id, now)
        return True

    async def _ignore_signal(self, callback_id: str, kind: str) -> bool:
        token = await self._storage.get_callback(callback_id)
        if token is None:
            raise CallbackNotFoundError(f"Callback {callback_id} not found")
        logger.warning(
            f"Ignoring {kind} signal for callback {callback_id}: already {token.status}"
        )
        return False

    async def _deliver(self, callback_id: str, now) -> None:
        """Checkpoint the consumed token's outcome onto its operation and resume the execution."""
        token = await self._storage.get_callback(callback_id)
        op = await self._storage.get_operation(token.execution_id, token.operation_id)
        if op is not None and not op.is_terminal:
            await self._storage.checkpoint(token.execution_id, settle_operation(op, token, now))
        resumed = await self._storage.resume_execution(token.execution_id, now)
        logger.info(
            f"Callback {callback_id} ({token.operation_name!r}) {token.status} for execution "
            f"{token.execution_id}{'' if resumed else ' (not resumed)'}"
        )

    # =========================================================================
    # Inspection
    # =========================================================================

    async def get_execution(self, execution_id: str) -> Execution:
        return await self._require_execution(execution_id)

    async def get_execution_history(self, execution_id: str) -> list[Operation]:
        """Operations of an execution in the order they were first recorded."""
        await self._require_execution(execution_id)
        return await self._storage.get_operations(execution_id)

    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        return await self._storage.list_executions(status)

    async def _require_execution(self, execution_id: str) -> Execution:
        execution = await self._storage.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution
