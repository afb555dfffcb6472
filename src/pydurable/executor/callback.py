"""
External callbacks.

`ctx.wait_for_callback(name, submit_fn)` registers a CallbackToken, runs
`submit_fn(callback_id, step_ctx)` once as a child step named
"submitter", and suspends until an external system signals the token
through DurableClient (success, failure or heartbeat), or the token
expires.

Lifecycle of a CALLBACK operation:
    (new) → WAITING(callback_id) → SUCCEEDED (success signal)
                                 → FAILED    (failure signal, timeout, submitter failure)

Design: Token Holds the Outcome
    The signal outcome is stored on the token when it is consumed. The
    client also checkpoints the operation, but a replay that finds a
    consumed token with a non-terminal operation settles the operation
    from the token, so a signaller crash in between loses nothing.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydurable.core.identity import new_callback_id
from pydurable.core.options import CallbackConfig, StepConfig
from pydurable.core.step_context import StepContext
from pydurable.executor.outcome import _SuspendExecution
from pydurable.models import (
    CallbackStatus,
    CallbackToken,
    ErrorObject,
    Operation,
    OperationStatus,
    OperationType,
)
from pydurable.models.errors import CallbackTimeoutError, FatalExecutionError
from pydurable.storage.base import StorageError

if TYPE_CHECKING:
    from pydurable.core.context import DurableContext

logger = logging.getLogger(__name__)

SUBMITTER_STEP_NAME = "submitter"


def settle_operation(op: Operation, token: CallbackToken, now: datetime) -> Operation:
    """Terminal version of a CALLBACK operation for a consumed token."""
    if token.status == CallbackStatus.SUCCEEDED:
        return op.succeed(token.result, now)
    error = token.error
    if error is None:
        error = ErrorObject.from_exception(CallbackTimeoutError(op.name))
    return op.fail(error, now)


async def run_wait_for_callback(
    ctx: DurableContext,
    name: str,
    submit_fn: Callable[[str, StepContext], Any],
    config: CallbackConfig,
) -> Any:
    state = ctx.state
    storage = state.storage
    op_id, sequence, op = ctx.begin_operation(name, OperationType.CALLBACK)
    serdes = config.serdes or state.serdes

    if op is not None and op.is_terminal:
        return ctx.cached_result(op, serdes)

    if op is None:
        now = state.now()
        token = CallbackToken(
            callback_id=new_callback_id(),
            execution_id=state.execution_id,
            operation_id=op_id,
            operation_name=name,
            timeout_at=now + config.timeout if config.timeout else None,
            heartbeat_timeout=config.heartbeat_timeout,
            heartbeat_deadline=now + config.heartbeat_timeout if config.heartbeat_timeout else None,
            created_at=now,
        )
        await storage.register_callback(token)
        op = await state.checkpoint(
            Operation(
                operation_id=op_id,
                execution_id=state.execution_id,
                name=name,
                operation_type=OperationType.CALLBACK,
                parent_id=ctx.parent_id,
                sequence=sequence,
                status=OperationStatus.WAITING,
                started_at=now,
                fire_at=token.next_deadline(),
                callback_id=token.callback_id,
            )
        )
        logger.debug(f"Callback {name!r} registered as {token.callback_id}")

    callback_id = op.callback_id

    async def submit(step_ctx: StepContext) -> None:
        value = submit_fn(callback_id, step_ctx)
        if inspect.isawaitable(value):
            await value

    try:
        await ctx.child_context(op_id).step(
            SUBMITTER_STEP_NAME, submit, config=StepConfig(retry_policy=config.retry_policy)
        )
    except FatalExecutionError:
        raise
    except Exception as error:
        error_object = ErrorObject.from_exception(error)
        await storage.resolve_callback(
            callback_id, CallbackStatus.FAILED, state.now(), error=error_object
        )
        await state.checkpoint(op.fail(error_object, state.now()))
        raise

    # A signal may have settled the operation since the log was loaded
    op = await state.refresh(op_id) or op
    if op.is_terminal:
        return ctx.cached_result(op, serdes)

    token = await storage.get_callback(callback_id)
    if token is None:
        raise StorageError(f"Callback token {callback_id} for operation {name!r} is missing")

    now = state.now()
    if token.is_open:
        reason = token.expired_reason(now)
        if reason is None:
            raise _SuspendExecution(token.next_deadline(), name)

        timeout = ErrorObject.from_exception(CallbackTimeoutError(name, reason))
        if await storage.resolve_callback(callback_id, CallbackStatus.TIMED_OUT, now, error=timeout):
            logger.info(f"Execution {state.execution_id}: callback {name!r} timed out ({reason})")
        # Re-read: a signal may have consumed the token first
        token = await storage.get_callback(callback_id) or token.update(
            status=CallbackStatus.TIMED_OUT, error=timeout, resolved_at=now
        )

    stored = await state.checkpoint(settle_operation(op, token, now))
    return ctx.cached_result(stored, serdes)
