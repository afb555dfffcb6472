"""
Poll-with-backoff waits.

`ctx.wait_for_condition(name, check_fn, config)` threads a state value
through repeated checks. Each check is one attempt of a STEP operation
(sub_type "WaitForCondition"); the latest state is checkpointed as the
operation's result between attempts, and the wait strategy decides the
delay before the next check.

Lifecycle: (new) → PENDING(state, fire_at) → ... → SUCCEEDED(final state)
                                                 → FAILED (check raised, or attempts exhausted)
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydurable.core.options import WaitForConditionConfig
from pydurable.core.state import IN_STEP
from pydurable.core.step_context import StepContext
from pydurable.executor.outcome import _SuspendExecution
from pydurable.models import ErrorObject, Operation, OperationStatus, OperationType
from pydurable.models.errors import FatalExecutionError, WaitForConditionTimeoutError
from pydurable.serdes import deserialize, serialize

if TYPE_CHECKING:
    from pydurable.core.context import DurableContext

logger = logging.getLogger(__name__)

WAIT_FOR_CONDITION = "WaitForCondition"


async def run_wait_for_condition(
    ctx: DurableContext,
    name: str,
    check_fn: Callable[[Any, StepContext], Any],
    config: WaitForConditionConfig,
) -> Any:
    state = ctx.state
    op_id, sequence, op = ctx.begin_operation(name, OperationType.STEP, WAIT_FOR_CONDITION)
    serdes = config.serdes or state.serdes
    strategy = config.wait_strategy

    if op is not None and op.is_terminal:
        return ctx.cached_result(op, serdes)

    now = state.now()
    if op is None:
        op = Operation(
            operation_id=op_id,
            execution_id=state.execution_id,
            name=name,
            operation_type=OperationType.STEP,
            parent_id=ctx.parent_id,
            sub_type=WAIT_FOR_CONDITION,
            sequence=sequence,
            status=OperationStatus.PENDING,
            started_at=now,
            result=serialize(config.initial_state, serdes),
        )
    elif not op.is_due(now):
        raise _SuspendExecution(op.fire_at, name)

    while True:
        op = op.with_status(OperationStatus.RUNNING, attempt=op.attempt + 1, fire_at=None)
        current = deserialize(op.result, serdes)

        error: Exception | None = None
        token = IN_STEP.set(name)
        try:
            new_state = check_fn(current, StepContext(state, op))
            if inspect.isawaitable(new_state):
                new_state = await new_state
            payload = serialize(new_state, serdes)
            decision = strategy.decide(new_state, op.attempt, seed=op_id)
        except FatalExecutionError:
            raise
        except Exception as e:
            error = e
        finally:
            IN_STEP.reset(token)

        now = state.now()
        if error is None and decision.should_continue and op.attempt >= strategy.max_attempts:
            error = WaitForConditionTimeoutError(name, op.attempt)

        if error is not None:
            await state.checkpoint(op.fail(ErrorObject.from_exception(error), now))
            logger.info(
                f"Execution {state.execution_id}: condition {name!r} failed on check "
                f"{op.attempt}: {type(error).__name__}: {error}"
            )
            raise error

        if not decision.should_continue:
            stored = await state.checkpoint(op.succeed(payload, now))
            logger.debug(f"Condition {name!r} met after {stored.attempt} check(s)")
            return ctx.cached_result(stored, serdes)

        fire_at = now + decision.delay
        op = await state.checkpoint(
            op.with_status(OperationStatus.PENDING, result=payload, fire_at=fire_at)
        )
        logger.debug(f"Condition {name!r} not met on check {op.attempt}, next check at {fire_at.isoformat()}")
        if decision.delay > timedelta(0):
            raise _SuspendExecution(fire_at, name)
