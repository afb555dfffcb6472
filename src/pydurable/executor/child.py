"""
Child contexts.

`ctx.run_in_child_context(name, fn)` runs `fn(child_ctx)` in a nested
naming scope and checkpoints its return value as a CHILD_CONTEXT
operation. Operations inside the child are scoped by the child's
operation id. Map iterations and parallel branches are child contexts too.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from pydurable.core.options import ChildConfig
from pydurable.models import ErrorObject, Operation, OperationStatus, OperationType
from pydurable.models.errors import FatalExecutionError
from pydurable.serdes import serialize

if TYPE_CHECKING:
    from pydurable.core.context import DurableContext

logger = logging.getLogger(__name__)


async def run_in_child_context(
    ctx: DurableContext,
    name: str,
    fn: Callable[[DurableContext], Any],
    config: ChildConfig,
    sub_type: str | None = None,
    on_resolve: Callable[[], dict[str, Any]] | None = None,
) -> Any:
    """
    Args:
        on_resolve: Called right before the terminal checkpoint; its dict
            is merged into the operation details
    """
    state = ctx.state
    op_id, sequence, op = ctx.begin_operation(name, OperationType.CHILD_CONTEXT, sub_type)
    serdes = config.serdes or state.serdes

    if op is not None and op.is_terminal:
        return ctx.cached_result(op, serdes)

    if op is None:
        op = await state.checkpoint(
            Operation(
                operation_id=op_id,
                execution_id=state.execution_id,
                name=name,
                operation_type=OperationType.CHILD_CONTEXT,
                parent_id=ctx.parent_id,
                sub_type=sub_type,
                sequence=sequence,
                status=OperationStatus.RUNNING,
                started_at=state.now(),
            )
        )

    def with_details(terminal: Operation) -> Operation:
        if on_resolve is None:
            return terminal
        return replace(terminal, details={**terminal.details, **on_resolve()})

    try:
        value = fn(ctx.child_context(op_id))
        if inspect.isawaitable(value):
            value = await value
        payload = serialize(value, serdes)
    except FatalExecutionError:
        raise
    except Exception as error:
        await state.checkpoint(with_details(op.fail(ErrorObject.from_exception(error), state.now())))
        logger.debug(f"Child context {name!r} failed: {type(error).__name__}: {error}")
        raise

    stored = await state.checkpoint(with_details(op.succeed(payload, state.now())))
    return ctx.cached_result(stored, serdes)
