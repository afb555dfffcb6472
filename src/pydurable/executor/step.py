"""
Step execution with checkpointing and retries.

A step runs `fn(step_ctx)` at most once per retry attempt (or at least
once, when configured) and checkpoints its outcome before the result is
returned to workflow code. On replay the checkpointed outcome is returned
without running the body again.

Lifecycle of a STEP operation:
    (new) → RUNNING(attempt=1) → SUCCEEDED
                               → PENDING(fire_at) → RUNNING(attempt=2) → ...
                               → FAILED

Design Pattern: Template Method
run_step owns the checkpoint/retry skeleton; the body is the only
variable part. wait_for_condition and the callback submitter reuse the
same StepContext and failure handling.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydurable.core.options import StepConfig, StepSemantics
from pydurable.core.state import IN_STEP, ExecutionState
from pydurable.core.step_context import StepContext
from pydurable.executor.outcome import _SuspendExecution
from pydurable.models import ErrorObject, Operation, OperationStatus, OperationType, RetryPolicy
from pydurable.models.errors import (
    FatalExecutionError,
    StepInterruptedError,
    UnrecoverableExecutionError,
)
from pydurable.serdes import serialize

if TYPE_CHECKING:
    from pydurable.core.context import DurableContext

logger = logging.getLogger(__name__)


async def run_step(
    ctx: DurableContext, name: str, fn: Callable[[StepContext], Any], config: StepConfig
) -> Any:
    state = ctx.state
    op_id, sequence, op = ctx.begin_operation(name, OperationType.STEP)
    serdes = config.serdes or state.serdes

    if op is not None and op.is_terminal:
        logger.debug(f"Step {name!r} replayed from log ({op.status})")
        return ctx.cached_result(op, serdes)

    policy = config.retry_policy or state.config.default_retry_policy
    now = state.now()

    if op is None:
        op = Operation(
            operation_id=op_id,
            execution_id=state.execution_id,
            name=name,
            operation_type=OperationType.STEP,
            parent_id=ctx.parent_id,
            sequence=sequence,
            status=OperationStatus.PENDING,
            started_at=now,
        )
    elif op.status == OperationStatus.PENDING and not op.is_due(now):
        raise _SuspendExecution(op.fire_at, name)
    elif op.status == OperationStatus.RUNNING:
        if config.semantics == StepSemantics.AT_MOST_ONCE_PER_RETRY:
            # The previous replay died after the RUNNING checkpoint
            interrupted = StepInterruptedError(name, op.attempt)
            logger.warning(f"Execution {state.execution_id}: {interrupted}")
            op = await handle_step_failure(state, op, interrupted, policy)
        else:
            # Re-run the interrupted attempt
            op = op.with_status(OperationStatus.PENDING, attempt=op.attempt - 1)

    while True:
        op = op.with_status(OperationStatus.RUNNING, attempt=op.attempt + 1, fire_at=None)
        if config.semantics == StepSemantics.AT_MOST_ONCE_PER_RETRY:
            op = await state.checkpoint(op)

        error: Exception | None = None
        token = IN_STEP.set(name)
        try:
            value = fn(StepContext(state, op))
            if inspect.isawaitable(value):
                value = await value
            payload = serialize(value, serdes)
        except FatalExecutionError:
            raise
        except Exception as e:
            error = e
        finally:
            IN_STEP.reset(token)

        if error is not None:
            op = await handle_step_failure(state, op, error, policy)
            continue

        stored = await state.checkpoint(op.succeed(payload, state.now()))
        logger.debug(f"Step {name!r} succeeded on attempt {stored.attempt}")
        # Return the checkpointed value so first runs and replays see identical results
        return ctx.cached_result(stored, serdes)


async def handle_step_failure(
    state: ExecutionState, op: Operation, error: Exception, policy: RetryPolicy
) -> Operation:
    """
    Apply the retry policy to a failed attempt.

    Returns the PENDING operation when the retry may run immediately.
    Raises _SuspendExecution when the retry is delayed, or re-raises
    `error` after checkpointing FAILED when no retry remains.
    """
    now = state.now()
    error_object = ErrorObject.from_exception(error)

    if isinstance(error, UnrecoverableExecutionError):
        should_retry, delay = False, timedelta(0)
    else:
        decision = policy.decide(error, op.attempt, seed=op.operation_id)
        should_retry, delay = decision.should_retry, decision.delay

    if should_retry:
        fire_at = now + delay
        op = await state.checkpoint(
            op.with_status(OperationStatus.PENDING, error=error_object, fire_at=fire_at)
        )
        logger.info(
            f"Execution {state.execution_id}: step {op.name!r} attempt {op.attempt} failed "
            f"({type(error).__name__}: {error}), retrying in {delay.total_seconds():.3f}s"
        )
        if delay > timedelta(0):
            raise _SuspendExecution(fire_at, op.name)
        return op

    await state.checkpoint(op.fail(error_object, now))
    logger.info(
        f"Execution {state.execution_id}: step {op.name!r} failed after "
        f"{op.attempt} attempt(s): {type(error).__name__}: {error}"
    )
    if isinstance(error, UnrecoverableExecutionError):
        state.record_fatal(error)
    raise error

