"""
Replay orchestrator.

Runs one replay of an execution: claims the lease, loads the operation
log, re-invokes the workflow handler from the top with the original
input and a root DurableContext, and records the outcome.

Every durable call the handler makes is answered from the log when it is
recorded and terminal; the first new operation either completes (and the
replay continues) or suspends the whole execution.

Design: Information Hiding (Parnas)
    Lease handling and terminal bookkeeping live here. Workers and the
    client only call run() and look at the ReplayOutcome.

Usage:
    ```python
    orchestrator = ReplayOrchestrator(storage, registry, config, worker_id="worker-1")
    outcome = await orchestrator.run(execution_id)
    ```
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import weakref

from pydurable.config import EngineConfig
from pydurable.core.context import DurableContext
from pydurable.core.state import EXECUTION_STATE, ExecutionState
from pydurable.executor.outcome import (
    Completed,
    ReplayOutcome,
    Suspended,
    SuspendReason,
    _SuspendExecution,
)
from pydurable.models import ErrorObject, Execution, ExecutionStatus
from pydurable.models.errors import ExecutionTimedOutError, ValidationError
from pydurable.registry import WorkflowRegistry
from pydurable.serdes import deserialize, serialize
from pydurable.storage.base import ExecutionLog, StorageError

logger = logging.getLogger(__name__)


class ReplayOrchestrator:
    """Runs replays of executions against one storage backend."""

    def __init__(
        self,
        storage: ExecutionLog,
        registry: WorkflowRegistry,
        config: EngineConfig | None = None,
        worker_id: str = "local",
    ):
        self._storage = storage
        self._registry = registry
        self._config = config or EngineConfig()
        self._worker_id = worker_id
        # One replay per execution id within this process
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def run(self, execution_id: str) -> ReplayOutcome | None:
        """
        Claim a PENDING execution and replay it.

        Returns:
            The replay outcome, or None if the execution was not PENDING
            (another replay holds it, or it already finished)
        """
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()

        async with lock:
            execution = await self._storage.claim_execution(
                execution_id, self._worker_id, self._config.clock()
            )
            if execution is None:
                logger.debug(f"Execution {execution_id} not claimable by {self._worker_id}")
                return None
            return await self.replay(execution)

    async def replay(self, execution: Execution) -> ReplayOutcome:
        """
        Replay an execution this worker already holds the lease for.

        The lease is renewed in the background while the replay runs, and
        every write is fenced by it. A replay whose lease was taken over
        raises LeaseLostError instead of recording an outcome.
        """
        renewal = asyncio.create_task(self._keep_lease(execution))
        try:
            return await self._replay(execution)
        finally:
            renewal.cancel()
            try:
                await renewal
            except asyncio.CancelledError:
                pass

    async def _keep_lease(self, execution: Execution) -> None:
        interval = self._config.lease_timeout.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._storage.renew_lease(
                    execution.execution_id, execution.replay_count, self._config.clock()
                )
            except StorageError as e:
                logger.warning(f"Execution {execution.execution_id}: lease renewal failed: {e}")
                continue
            if not renewed:
                logger.warning(
                    f"Execution {execution.execution_id}: {self._worker_id} lost the lease "
                    f"of replay #{execution.replay_count}"
                )
                return

    async def _replay(self, execution: Execution) -> ReplayOutcome:
        config = self._config
        execution_id = execution.execution_id
        now = config.clock()

        created_at = execution.created_at or now
        deadline = created_at + config.max_execution_lifetime
        if now >= deadline:
            error = ExecutionTimedOutError(
                f"Execution {execution_id} exceeded its maximum lifetime of "
                f"{config.max_execution_lifetime}"
            )
            return await self._complete(execution, ExecutionStatus.TIMED_OUT, error=error)

        definition = self._registry.get(execution.workflow_name)
        if definition is None:
            error = ValidationError(f"Workflow {execution.workflow_name!r} is not registered")
            return await self._complete(execution, ExecutionStatus.FAILED, error=error)
        if definition.version != execution.workflow_version:
            logger.warning(
                f"Execution {execution_id} started with {execution.workflow_name} "
                f"version {execution.workflow_version}, replaying with version {definition.version}"
            )

        serdes = definition.serdes or config.serdes
        operations = await self._storage.get_operations(execution_id)
        state = ExecutionState(
            execution, self._storage, config, operations, lease=execution.replay_count
        )
        ctx = DurableContext(state)

        logger.debug(
            f"Replaying execution {execution_id} ({execution.workflow_name}, "
            f"replay #{execution.replay_count}, {len(operations)} recorded operations)"
        )

        token = EXECUTION_STATE.set(state)
        try:
            try:
                payload = deserialize(execution.input, serdes)
                result = definition.handler(payload, ctx)
                if inspect.isawaitable(result):
                    result = await result
                output = serialize(result, serdes)
            finally:
                await state.drain_background()
        except _SuspendExecution as suspension:
            if state.fatal_error is not None:
                return await self._complete(execution, ExecutionStatus.FAILED, error=state.fatal_error)
            return await self._suspend(execution, state, suspension)
        except StorageError:
            # Leave the lease in place; stale-lease recovery re-queues the execution
            raise
        except Exception as error:
            # A fatal error wins even if workflow code caught it and raised something else
            error = state.fatal_error or error
            return await self._complete(execution, ExecutionStatus.FAILED, error=error)
        finally:
            EXECUTION_STATE.reset(token)

        if state.fatal_error is not None:
            return await self._complete(execution, ExecutionStatus.FAILED, error=state.fatal_error)

        await self._storage.complete_execution(
            execution_id,
            ExecutionStatus.SUCCEEDED,
            config.clock(),
            output=output,
            lease=execution.replay_count,
        )
        logger.info(f"Execution {execution_id} succeeded")
        return Completed(status=ExecutionStatus.SUCCEEDED, result=result)

    async def _suspend(
        self, execution: Execution, state: ExecutionState, suspension: _SuspendExecution
    ) -> ReplayOutcome:
        wake_at = suspension.wake_at
        # Never sleep past the lifetime deadline, so the timeout is observed
        if wake_at is None or wake_at > state.deadline:
            wake_at = state.deadline
        await self._storage.suspend_execution(
            execution.execution_id, wake_at, self._config.clock(), lease=execution.replay_count
        )
        logger.info(
            f"Execution {execution.execution_id} suspended on {suspension.waiting_on!r} "
            f"until {wake_at.isoformat()}"
        )
        return Suspended(
            SuspendReason(
                execution_id=execution.execution_id,
                wake_at=wake_at,
                waiting_on=suspension.waiting_on,
            )
        )

    async def _complete(
        self, execution: Execution, status: ExecutionStatus, error: BaseException
    ) -> Completed:
        await self._storage.complete_execution(
            execution.execution_id,
            status,
            self._config.clock(),
            error=ErrorObject.from_exception(error),
            lease=execution.replay_count,
        )
        logger.info(
            f"Execution {execution.execution_id} {status}: {type(error).__name__}: {error}"
        )
        return Completed(status=status, result=error)
