"""Capability-restricted context handed to step bodies.

A step body receives a StepContext, not a DurableContext: it can read
its identity, log, and draw replay-safe randomness, but it cannot issue
durable operations. Everything a step produces is checkpointed as its
result, so randomness here only needs to be stable per attempt.
"""

from __future__ import annotations

import random
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from pydurable.core.logger import ReplayAwareLogger
from pydurable.models import Operation

if TYPE_CHECKING:
    from pydurable.core.state import ExecutionState


class StepContext:
    """
    Context passed to `fn(step_ctx)` for steps, condition checks and callback submitters.

    Usage:
        ```python
        async def reserve(step_ctx: StepContext):
            step_ctx.logger.info("attempt %d", step_ctx.attempt)
            return await inventory.reserve(request_id=str(step_ctx.uuid()))
        ```
    """

    def __init__(self, state: ExecutionState, operation: Operation):
        self._state = state
        self._operation = operation
        self.random = random.Random(
            f"{state.execution_id}:{operation.operation_id}:{operation.attempt}"
        )
        """Random generator seeded by execution, operation and attempt."""

        # Step bodies only run when their outcome is not cached, so never suppress
        self.logger = ReplayAwareLogger(state, operation.name, suppress_during_replay=False)

    @property
    def execution_id(self) -> str:
        return self._state.execution_id

    @property
    def operation_id(self) -> str:
        return self._operation.operation_id

    @property
    def name(self) -> str:
        return self._operation.name

    @property
    def attempt(self) -> int:
        """Current attempt number (1-indexed)."""
        return self._operation.attempt

    def now(self) -> datetime:
        return self._state.now()

    def uuid(self) -> uuid.UUID:
        """Random UUID drawn from the seeded generator."""
        return uuid.UUID(int=self.random.getrandbits(128), version=4)

    def __repr__(self) -> str:
        return f"StepContext(name={self.name!r}, attempt={self.attempt})"
