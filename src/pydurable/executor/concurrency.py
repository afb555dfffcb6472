"""
Concurrent branches: map and parallel.

A MAP or PARALLEL operation owns one CHILD_CONTEXT operation per branch.
Branches run as asyncio tasks (bounded by max_concurrency) and each
branch resolution is fed to a CompletionTracker. Once the completion
policy resolves, the remaining branches are abandoned: never cancelled,
their eventual results discarded.

Design: Recorded Resolution Order
    Every branch checkpoint carries a resolution counter assigned right
    before its terminal checkpoint. Live resolutions are fed to the
    tracker in counter order, and a replay pre-feeds recorded branches
    in the same order, so the policy resolves at the same point on every
    replay even though live branches finish in arbitrary order.

Lifecycle of the MAP/PARALLEL operation:
    (new) → RUNNING → SUCCEEDED (policy met)
                    → FAILED    (policy not met; the BatchResult is still returned)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from pydurable.core.batch import (
    BatchItem,
    BatchItemStatus,
    BatchResult,
    CompletionReason,
    CompletionTracker,
)
from pydurable.core.identity import operation_id
from pydurable.core.options import ChildConfig, CompletionConfig, MapConfig, ParallelConfig
from pydurable.executor.child import run_in_child_context
from pydurable.executor.outcome import _SuspendExecution, earliest
from pydurable.models import ErrorObject, Operation, OperationStatus, OperationType
from pydurable.models.errors import BatchError, ReplayDivergenceError, ValidationError
from pydurable.serdes import SerDes, deserialize

if TYPE_CHECKING:
    from pydurable.core.context import DurableContext

logger = logging.getLogger(__name__)

MAP_ITERATION = "MapIteration"
PARALLEL_BRANCH = "ParallelBranch"

_RESOLUTION = "resolution"

Branch = Callable[["DurableContext"], Any]


async def run_map(
    ctx: DurableContext,
    name: str,
    items: Sequence[Any],
    fn: Callable[[DurableContext, Any, int, Sequence[Any]], Any],
    config: MapConfig,
) -> BatchResult:
    items = list(items)
    names = [config.item_namer(item, index) for index, item in enumerate(items)]

    def bind(item: Any, index: int) -> Branch:
        return lambda child: fn(child, item, index, items)

    branches = [bind(item, index) for index, item in enumerate(items)]
    return await _run_batch(
        ctx,
        name,
        OperationType.MAP,
        MAP_ITERATION,
        names,
        branches,
        config.max_concurrency,
        config.completion_config,
        config.serdes,
    )


async def run_parallel(
    ctx: DurableContext,
    name: str,
    branches: Sequence[Branch] | Mapping[str, Branch],
    config: ParallelConfig,
) -> BatchResult:
    if isinstance(branches, Mapping):
        names = list(branches.keys())
        fns = list(branches.values())
    else:
        fns = list(branches)
        names = [str(index) for index in range(len(fns))]

    for fn in fns:
        if not callable(fn):
            raise ValidationError(f"Parallel branch must be callable, got {fn!r}")

    return await _run_batch(
        ctx,
        name,
        OperationType.PARALLEL,
        PARALLEL_BRANCH,
        names,
        fns,
        config.max_concurrency,
        config.completion_config,
        config.serdes,
    )


async def _run_batch(
    ctx: DurableContext,
    name: str,
    operation_type: OperationType,
    branch_sub_type: str,
    names: list[str],
    fns: list[Branch],
    max_concurrency: int | None,
    completion: CompletionConfig,
    serdes: SerDes | None,
) -> BatchResult:
    state = ctx.state
    for branch_name in names:
        if not isinstance(branch_name, str) or not branch_name:
            raise ValidationError(f"Branch names must be non-empty strings, got {branch_name!r}")
    if len(set(names)) != len(names):
        raise ValidationError(f"Branch names of {name!r} must be unique")

    op_id, sequence, op = ctx.begin_operation(name, operation_type)
    serdes = serdes or state.serdes
    branch_ids = [operation_id(op_id, branch_name) for branch_name in names]

    if op is not None and op.is_terminal:
        return _rebuild(ctx, op, names, branch_ids, serdes)

    if op is None:
        op = await state.checkpoint(
            Operation(
                operation_id=op_id,
                execution_id=state.execution_id,
                name=name,
                operation_type=operation_type,
                parent_id=ctx.parent_id,
                sequence=sequence,
                status=OperationStatus.RUNNING,
                started_at=state.now(),
                details={"total": len(names)},
            )
        )
    elif op.details.get("total", len(names)) != len(names):
        raise state.record_fatal(
            ReplayDivergenceError(
                f"{operation_type} {name!r} was recorded with {op.details['total']} branches, "
                f"replay issued {len(names)}"
            )
        )

    tracker = CompletionTracker(len(names), completion)
    order: list[int] = []
    reason: CompletionReason | None = CompletionReason.ALL_COMPLETED if not names else None

    # Branches resolved by earlier replays, in recorded resolution order
    recorded = sorted(
        (branch.details.get(_RESOLUTION, 0), index)
        for index, branch in enumerate(state.get(bid) for bid in branch_ids)
        if branch is not None and branch.is_terminal
    )
    for _, index in recorded:
        state.mark_visited(branch_ids[index])
        if reason is None:
            order.append(index)
            reason = tracker.record(state.get(branch_ids[index]).succeeded)

    start = recorded[-1][0] + 1 if recorded else 0
    counter = itertools.count(start)
    scope = ctx.child_context(op_id)
    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
    stopped = False

    def next_resolution() -> dict[str, Any]:
        return {_RESOLUTION: next(counter)}

    async def run_branch(index: int) -> None:
        if semaphore is None:
            await start_branch(index)
            return
        async with semaphore:
            await start_branch(index)

    async def start_branch(index: int) -> None:
        if stopped:
            return
        await run_in_child_context(
            scope,
            names[index],
            fns[index],
            ChildConfig(serdes=serdes),
            sub_type=branch_sub_type,
            on_resolve=next_resolution,
        )

    tasks: dict[asyncio.Task, int] = {}
    if reason is None:
        resolved = {index for _, index in recorded}
        for index in range(len(names)):
            if index not in resolved:
                tasks[asyncio.create_task(run_branch(index))] = index

    wake_times = []
    buffered: dict[int, int] = {}
    expected = start
    fatal: BaseException | None = None
    try:
        while tasks and reason is None and fatal is None:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                index = tasks.pop(task)
                error = task.exception()
                if isinstance(error, _SuspendExecution):
                    wake_times.append(error.wake_at)
                    continue
                branch = state.get(branch_ids[index])
                if branch is not None and branch.is_terminal:
                    buffered[branch.details[_RESOLUTION]] = index
                elif error is not None:
                    # Not a branch outcome: a fatal error or a storage failure
                    fatal = fatal or error

            if state.fatal_error is not None:
                fatal = state.fatal_error

            # A later counter waits until every earlier one has been fed
            while expected in buffered and reason is None:
                index = buffered.pop(expected)
                expected += 1
                order.append(index)
                reason = tracker.record(state.get(branch_ids[index]).succeeded)
    finally:
        if tasks:
            stopped = True
            for task in tasks:
                state.track_background(task)

    if fatal is not None:
        raise fatal

    if reason is None:
        logger.debug(
            f"{operation_type} {name!r}: {tracker.resolved}/{len(names)} branches resolved, suspending"
        )
        raise _SuspendExecution(earliest(wake_times), name)

    return await _finish(ctx, op, names, branch_ids, order, tracker, reason, serdes)


async def _finish(
    ctx: DurableContext,
    op: Operation,
    names: list[str],
    branch_ids: list[str],
    order: list[int],
    tracker: CompletionTracker,
    reason: CompletionReason,
    serdes: SerDes,
) -> BatchResult:
    state = ctx.state
    fed = set(order)
    statuses = []
    for index, branch_id in enumerate(branch_ids):
        branch = state.get(branch_id)
        if index in fed:
            statuses.append(BatchItemStatus.SUCCEEDED if branch.succeeded else BatchItemStatus.FAILED)
        elif branch is not None:
            statuses.append(BatchItemStatus.STARTED)
        else:
            statuses.append(BatchItemStatus.NOT_STARTED)

    policy_met = tracker.policy_met(reason)
    result = _build_result(ctx, names, branch_ids, statuses, order, reason, policy_met, serdes)
    details = {
        **op.details,
        "completion_reason": reason.value,
        "policy_met": policy_met,
        "items": [status.value for status in statuses],
        "resolution_order": [names[index] for index in order],
    }

    now = state.now()
    if policy_met:
        terminal = op.succeed(None, now)
    else:
        error = BatchError(
            f"{op.name!r}: {result.failure_count} of {result.total_count} branches failed "
            f"({reason})",
            result.get_errors(),
        )
        terminal = op.fail(ErrorObject.from_exception(error), now)
    await state.checkpoint(replace(terminal, details=details))
    # Abandoned branches are never revisited
    state.mark_visited(op.operation_id)

    logger.info(
        f"Execution {state.execution_id}: {op.operation_type} {op.name!r} completed "
        f"({reason}, {result.success_count} succeeded, {result.failure_count} failed, "
        f"policy met: {policy_met})"
    )
    return result


def _rebuild(
    ctx: DurableContext,
    op: Operation,
    names: list[str],
    branch_ids: list[str],
    serdes: SerDes,
) -> BatchResult:
    """BatchResult of a completed MAP/PARALLEL operation, from its details and branch records."""
    state = ctx.state
    details = op.details
    statuses = [BatchItemStatus(value) for value in details.get("items", [])]
    if len(statuses) != len(names):
        raise state.record_fatal(
            ReplayDivergenceError(
                f"{op.operation_type} {op.name!r} was recorded with {len(statuses)} branches, "
                f"replay issued {len(names)}"
            )
        )
    positions = {branch_name: index for index, branch_name in enumerate(names)}
    try:
        order = [positions[branch_name] for branch_name in details.get("resolution_order", [])]
    except KeyError as e:
        raise state.record_fatal(
            ReplayDivergenceError(f"Branch {e.args[0]!r} of {op.name!r} no longer exists on replay")
        ) from e

    return _build_result(
        ctx,
        names,
        branch_ids,
        statuses,
        order,
        CompletionReason(details["completion_reason"]),
        bool(details["policy_met"]),
        serdes,
    )


def _build_result(
    ctx: DurableContext,
    names: list[str],
    branch_ids: list[str],
    statuses: list[BatchItemStatus],
    order: list[int],
    reason: CompletionReason,
    policy_met: bool,
    serdes: SerDes,
) -> BatchResult:
    state = ctx.state
    items = []
    for index, (branch_name, branch_id, status) in enumerate(zip(names, branch_ids, statuses)):
        branch = state.get(branch_id)
        result = None
        error = None
        if status == BatchItemStatus.SUCCEEDED:
            result = deserialize(branch.result, serdes)
        elif status == BatchItemStatus.FAILED:
            error = branch.error.to_exception()
        items.append(BatchItem(index=index, name=branch_name, status=status, result=result, error=error))

    return BatchResult(
        items=items,
        completion_reason=reason,
        policy_met=policy_met,
        resolution_order=[names[index] for index in order],
    )
