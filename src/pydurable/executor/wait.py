"""
Durable timers.

`ctx.wait(name, duration)` records a WAIT operation with an absolute
fire_at computed once from the engine clock, then suspends the execution.
The worker resumes the execution when fire_at passes; the replay finds
the operation due, checkpoints it SUCCEEDED and continues.

Lifecycle: (new) → WAITING(fire_at) → SUCCEEDED
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from pydurable.executor.outcome import _SuspendExecution
from pydurable.models import Operation, OperationStatus, OperationType
from pydurable.models.errors import ValidationError

if TYPE_CHECKING:
    from pydurable.core.context import DurableContext

logger = logging.getLogger(__name__)


def to_duration(duration: timedelta | float | int, max_lifetime: timedelta) -> timedelta:
    """Validate a wait duration (timedelta or seconds)."""
    if isinstance(duration, bool) or not isinstance(duration, (timedelta, int, float)):
        raise ValidationError(f"Wait duration must be a timedelta or seconds, got {duration!r}")
    if not isinstance(duration, timedelta):
        duration = timedelta(seconds=duration)
    if duration <= timedelta(0):
        raise ValidationError(f"Wait duration must be positive, got {duration}")
    if duration > max_lifetime:
        raise ValidationError(
            f"Wait duration {duration} exceeds the maximum execution lifetime {max_lifetime}"
        )
    return duration


async def run_wait(ctx: DurableContext, name: str, duration: timedelta | float) -> None:
    state = ctx.state
    delta = to_duration(duration, state.config.max_execution_lifetime)
    op_id, sequence, op = ctx.begin_operation(name, OperationType.WAIT)

    if op is not None and op.is_terminal:
        return None

    now = state.now()
    if op is None:
        op = await state.checkpoint(
            Operation(
                operation_id=op_id,
                execution_id=state.execution_id,
                name=name,
                operation_type=OperationType.WAIT,
                parent_id=ctx.parent_id,
                sequence=sequence,
                status=OperationStatus.WAITING,
                started_at=now,
                fire_at=now + delta,
            )
        )
        logger.debug(f"Wait {name!r} scheduled until {op.fire_at.isoformat()}")

    if op.is_due(now):
        await state.checkpoint(op.succeed(None, now))
        logger.debug(f"Wait {name!r} fired")
        return None

    raise _SuspendExecution(op.fire_at, name)
