"""Task-local execution state for one replay.

ExecutionState holds everything a replay needs: the execution record, the
operation log loaded at replay start, the storage backend and the engine
config. Every DurableContext of the replay (root, child, map branch) shares
one ExecutionState.

Design: Task-Local State (contextvars)
    IN_STEP marks code running inside a step body, so a durable call made
    from there is detected without threading a flag through user code.
    asyncio tasks copy the context when created, so map branches started
    from workflow code never inherit an IN_STEP flag.
"""

from __future__ import annotations

import asyncio
import logging
from contextvars import ContextVar
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from pydurable.config import EngineConfig
from pydurable.models import Execution, Operation
from pydurable.storage.base import ExecutionLog

if TYPE_CHECKING:
    from pydurable.serdes import SerDes

logger = logging.getLogger(__name__)

# =============================================================================
# Task-Local Context Variables
# =============================================================================

EXECUTION_STATE: ContextVar[Optional["ExecutionState"]] = ContextVar(
    "execution_state", default=None
)
"""State of the replay running in the current task, if any."""

IN_STEP: ContextVar[str | None] = ContextVar("in_step", default=None)
"""Name of the step whose body is running in the current task, if any."""


class ExecutionState:
    """Shared state of a single replay.

    Tracks:
    - The operation log snapshot (updated on every checkpoint)
    - Which cached operations the replay has not revisited yet
      (drives is_replaying, which silences the workflow logger)
    - A fatal error that must fail the execution even if workflow code
      catches it
    - Abandoned map/parallel branch tasks, drained before the replay ends
    """

    def __init__(
        self,
        execution: Execution,
        storage: ExecutionLog,
        config: EngineConfig,
        operations: list[Operation],
        lease: int | None = None,
    ):
        self.execution = execution
        # replay_count of the claim this replay runs under; fences every checkpoint
        self.lease = lease
        self.storage = storage
        self.config = config

        self._operations: dict[str, Operation] = {op.operation_id: op for op in operations}

        # Operations recorded by earlier replays and not yet revisited
        self._unvisited: set[str] = {op.operation_id for op in operations}

        self.fatal_error: BaseException | None = None
        self.background_tasks: set[asyncio.Task] = set()

        created_at = execution.created_at or config.clock()
        self.deadline: datetime = created_at + config.max_execution_lifetime

    def __repr__(self) -> str:
        return (
            f"ExecutionState(execution_id={self.execution_id!r}, "
            f"operations={len(self._operations)}, replaying={self.is_replaying})"
        )

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id

    @property
    def serdes(self) -> SerDes:
        return self.config.serdes

    @property
    def is_replaying(self) -> bool:
        """True while operations recorded by earlier replays remain to be revisited."""
        return bool(self._unvisited)

    def now(self) -> datetime:
        """Current time from the engine clock."""
        return self.config.clock()

    # =========================================================================
    # Operation log
    # =========================================================================

    def get(self, operation_id: str) -> Operation | None:
        return self._operations.get(operation_id)

    def children_of(self, parent_id: str) -> list[Operation]:
        return [op for op in self._operations.values() if op.parent_id == parent_id]

    def mark_visited(self, operation_id: str) -> None:
        """
        Record that the replay reached a recorded operation.

        Descendants of a terminal operation are marked too: a cached map or
        child context returns its result without re-walking the operations
        inside it.
        """
        if not self._unvisited:
            return
        self._unvisited.discard(operation_id)
        op = self._operations.get(operation_id)
        if op is None or not op.is_terminal:
            return
        for candidate in list(self._unvisited):
            if self._descends_from(candidate, operation_id):
                self._unvisited.discard(candidate)

    def _descends_from(self, operation_id: str, ancestor_id: str) -> bool:
        op = self._operations.get(operation_id)
        while op is not None and op.parent_id is not None:
            if op.parent_id == ancestor_id:
                return True
            op = self._operations.get(op.parent_id)
        return False

    async def checkpoint(self, operation: Operation) -> Operation:
        """Durably record an operation transition and update the snapshot."""
        stored = await self.storage.checkpoint(self.execution_id, operation, lease=self.lease)
        self._operations[stored.operation_id] = stored
        return stored

    async def refresh(self, operation_id: str) -> Operation | None:
        """Re-read one operation from storage (it may have been settled by a signal)."""
        op = await self.storage.get_operation(self.execution_id, operation_id)
        if op is not None:
            self._operations[operation_id] = op
        return op

    # =========================================================================
    # Fatal errors
    # =========================================================================

    def record_fatal(self, error: BaseException) -> BaseException:
        """Remember the first fatal error of this replay and return it for raising."""
        if self.fatal_error is None:
            self.fatal_error = error
            logger.error(
                f"Execution {self.execution_id}: fatal {type(error).__name__}: {error}"
            )
        return error

    # =========================================================================
    # Abandoned branches
    # =========================================================================

    def track_background(self, task: asyncio.Task) -> None:
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    async def drain_background(self) -> None:
        """Wait for abandoned branch tasks; their results are discarded."""
        while self.background_tasks:
            pending = list(self.background_tasks)
            logger.debug(
                f"Execution {self.execution_id}: draining {len(pending)} abandoned branch(es)"
            )
            await asyncio.gather(*pending, return_exceptions=True)
            self.background_tasks.difference_update(pending)
