"""Tests for map, parallel and child contexts."""

import asyncio

import pytest

from pydurable import (
    BatchError,
    BatchItemStatus,
    CompletionConfig,
    CompletionReason,
    ExecutionStatus,
    MapConfig,
    OperationStatus,
    OperationType,
    ParallelConfig,
    ValidationError,
)
from pydurable.core.identity import operation_id
from pydurable.executor.concurrency import MAP_ITERATION, PARALLEL_BRANCH


def summarize(batch):
    return {
        "reason": batch.completion_reason.value,
        "policy_met": batch.policy_met,
        "statuses": [item.status.value for item in batch.items],
        "results": batch.get_results(),
        "order": batch.resolution_order,
    }


# =============================================================================
# Map
# =============================================================================


@pytest.mark.asyncio
async def test_map_runs_every_item(engine):
    async def square(child, item, index, items):
        return await child.step("square", lambda s: item * item)

    @engine.workflow("squares")
    async def squares(payload, ctx):
        batch = await ctx.map("square-all", payload, square)
        return summarize(batch)

    execution_id = await engine.start("squares", [1, 2, 3])
    await engine.settle(execution_id)

    result = await engine.client.wait_for_result(execution_id)
    assert result["reason"] == "ALL_COMPLETED"
    assert result["policy_met"] is True
    assert result["results"] == [1, 4, 9]
    assert sorted(result["order"]) == ["0", "1", "2"]

    map_op = await engine.operation(execution_id, "square-all")
    assert map_op.operation_type == OperationType.MAP
    assert map_op.status == OperationStatus.SUCCEEDED
    branch = await engine.operation(execution_id, "1", parent_id=map_op.operation_id)
    assert branch.sub_type == MAP_ITERATION
    step = await engine.operation(execution_id, "square", parent_id=branch.operation_id)
    assert step.status == OperationStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_map_with_empty_input(engine):
    @engine.workflow("empty")
    async def empty(payload, ctx):
        batch = await ctx.map("nothing", [], lambda child, item, index, items: item)
        return summarize(batch)

    execution_id = await engine.start("empty")
    await engine.settle(execution_id)

    result = await engine.client.wait_for_result(execution_id)
    assert result == {
        "reason": "ALL_COMPLETED",
        "policy_met": True,
        "statuses": [],
        "results": [],
        "order": [],
    }


@pytest.mark.asyncio
async def test_map_failure_without_tolerance(engine):
    """Any failure fails the map operation, but the batch result is still returned."""

    def check(child, item, index, items):
        if item < 0:
            raise ValueError(f"negative item {item}")
        return item

    @engine.workflow("strict")
    async def strict(payload, ctx):
        batch = await ctx.map("check-all", payload, check)
        summary = summarize(batch)
        summary["errors"] = [str(e) for e in batch.get_errors()]
        return summary

    execution_id = await engine.start("strict", [1, -2, 3])
    await engine.settle(execution_id)

    result = await engine.client.wait_for_result(execution_id)
    assert result["reason"] == "ALL_COMPLETED"
    assert result["policy_met"] is False
    assert result["statuses"] == ["SUCCEEDED", "FAILED", "SUCCEEDED"]
    assert result["errors"] == ["negative item -2"]

    map_op = await engine.operation(execution_id, "check-all")
    assert map_op.status == OperationStatus.FAILED


@pytest.mark.asyncio
async def test_throw_if_error_fails_the_execution(engine):
    def check(child, item, index, items):
        raise RuntimeError("boom")

    @engine.workflow("throwing")
    async def throwing(payload, ctx):
        batch = await ctx.map("check-all", [1, 2], check)
        batch.throw_if_error()

    execution_id = await engine.start("throwing")
    execution = await engine.settle(execution_id)

    assert execution.status == ExecutionStatus.FAILED
    with pytest.raises(BatchError):
        await engine.client.wait_for_result(execution_id)


@pytest.mark.asyncio
async def test_tolerated_failures_meet_the_policy(engine):
    def check(child, item, index, items):
        if item == "bad":
            raise ValueError("bad item")
        return item

    config = MapConfig(completion_config=CompletionConfig(tolerated_failure_count=1))

    @engine.workflow("tolerant")
    async def tolerant(payload, ctx):
        batch = await ctx.map("check-all", ["a", "bad", "c"], check, config)
        batch.throw_if_error()
        return summarize(batch)

    execution_id = await engine.start("tolerant")
    await engine.settle(execution_id)

    result = await engine.client.wait_for_result(execution_id)
    assert result["policy_met"] is True
    assert result["results"] == ["a", "c"]


@pytest.mark.asyncio
async def test_bounded_map_stops_at_second_failure(engine):
    """[ok, ok, fail, ok, fail] with two branches at a time and one tolerated failure."""

    def settle_item(child, item, index, items):
        if item == "fail":
            raise ValueError(f"item {index} failed")
        return index

    config = MapConfig(
        max_concurrency=2,
        completion_config=CompletionConfig(tolerated_failure_count=1),
    )

    @engine.workflow("bounded-tolerance")
    async def bounded_tolerance(payload, ctx):
        batch = await ctx.map("settle-all", payload, settle_item, config)
        summary = summarize(batch)
        summary["success_count"] = batch.success_count
        summary["failure_count"] = batch.failure_count
        return summary

    execution_id = await engine.start("bounded-tolerance", ["ok", "ok", "fail", "ok", "fail"])
    await engine.settle(execution_id)

    result = await engine.client.wait_for_result(execution_id)
    assert result["reason"] == "FAILURE_TOLERANCE_EXCEEDED"
    assert result["policy_met"] is False
    assert result["failure_count"] == 2
    assert result["statuses"][2] == "FAILED"
    assert result["statuses"][4] == "FAILED"
    # The second failure resolves the policy; only branches resolved by then count
    assert result["statuses"][int(result["order"][-1])] == "FAILED"
    resolved_successes = [n for n in result["order"] if result["statuses"][int(n)] == "SUCCEEDED"]
    assert result["success_count"] == len(resolved_successes)

    map_op = await engine.operation(execution_id, "settle-all")
    assert map_op.status == OperationStatus.FAILED
    assert map_op.details["completion_reason"] == "FAILURE_TOLERANCE_EXCEEDED"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "items, reason, policy_met",
    [
        (["a", "bad", "c", "d"], "ALL_COMPLETED", True),
        (["a", "bad", "bad", "d"], "FAILURE_TOLERANCE_EXCEEDED", False),
    ],
)
async def test_tolerated_failure_percentage(engine, items, reason, policy_met):
    """25% tolerated: one failure in four is within bounds, two is not."""

    def check(child, item, index, items):
        if item == "bad":
            raise ValueError("bad item")
        return item

    config = MapConfig(completion_config=CompletionConfig(tolerated_failure_percentage=25))

    @engine.workflow("percentage")
    async def percentage(payload, ctx):
        return summarize(await ctx.map("check-all", payload, check, config))

    execution_id = await engine.start("percentage", items)
    await engine.settle(execution_id)

    result = await engine.client.wait_for_result(execution_id)
    assert result["reason"] == reason
    assert result["policy_met"] is policy_met


@pytest.mark.asyncio
async def test_min_successful_abandons_slower_branches(engine):
    """Branches finish 10s apart; the policy resolves after the second success."""

    async def delayed(child, item, index, items):
        await child.wait("delay", item)
        return index

    config = MapConfig(completion_config=CompletionConfig(min_successful=2))

    @engine.workflow("race")
    async def race(payload, ctx):
        batch = await ctx.map("race", [10, 20, 30, 40], delayed, config)
        await ctx.wait("after", 5)
        return summarize(batch)

    execution_id = await engine.start("race")
    execution = await engine.run_to_end(execution_id, step_seconds=10)

    assert execution.status == ExecutionStatus.SUCCEEDED
    result = await engine.client.wait_for_result(execution_id)
    assert result == {
        "reason": "MIN_SUCCESSFUL_REACHED",
        "policy_met": True,
        "statuses": ["SUCCEEDED", "SUCCEEDED", "STARTED", "STARTED"],
        "results": [0, 1],
        "order": ["0", "1"],
    }

    map_op = await engine.operation(execution_id, "race")
    first = await engine.operation(execution_id, "0", parent_id=map_op.operation_id)
    second = await engine.operation(execution_id, "1", parent_id=map_op.operation_id)
    slow = await engine.operation(execution_id, "3", parent_id=map_op.operation_id)
    assert first.details["resolution"] == 0
    assert second.details["resolution"] == 1
    assert not slow.is_terminal


@pytest.mark.asyncio
async def test_first_failure_stops_all_successful(engine):
    def fail_fast(child):
        raise ValueError("declined")

    async def slow(child):
        await child.wait("slow", 60)
        return "late"

    config = ParallelConfig(completion_config=CompletionConfig.all_successful())

    @engine.workflow("all-or-nothing")
    async def all_or_nothing(payload, ctx):
        batch = await ctx.parallel("checks", {"fraud": fail_fast, "credit": slow}, config)
        return summarize(batch)

    execution_id = await engine.start("all-or-nothing")
    execution = await engine.settle(execution_id)

    assert execution.status == ExecutionStatus.SUCCEEDED
    result = await engine.client.wait_for_result(execution_id)
    assert result["reason"] == "FAILURE_TOLERANCE_EXCEEDED"
    assert result["policy_met"] is False
    assert result["statuses"][0] == "FAILED"
    assert result["statuses"][1] in ("STARTED", "NOT_STARTED")


@pytest.mark.asyncio
async def test_map_result_is_rebuilt_on_replay(engine):
    calls = []

    def record(child, item, index, items):
        calls.append(item)
        return item.upper()

    @engine.workflow("rebuild")
    async def rebuild(payload, ctx):
        batch = await ctx.map("upper", ["a", "b"], record)
        await ctx.wait("pause", 30)
        return [item.result for item in batch.items]

    execution_id = await engine.start("rebuild")
    execution = await engine.run_to_end(execution_id, step_seconds=30)

    assert execution.status == ExecutionStatus.SUCCEEDED
    assert execution.replay_count == 2
    assert sorted(calls) == ["a", "b"]
    assert await engine.client.wait_for_result(execution_id) == ["A", "B"]


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_max_concurrency_bounds_running_branches(engine):
    active = 0
    peak = 0

    async def work(child, item, index, items):
        async def body(step_ctx):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return item

        return await child.step("work", body)

    @engine.workflow("bounded")
    async def bounded(payload, ctx):
        batch = await ctx.map("work-all", list(range(6)), work, MapConfig(max_concurrency=2))
        return batch.get_results()

    execution_id = await engine.start("bounded")
    await engine.settle(execution_id)

    assert await engine.client.wait_for_result(execution_id) == list(range(6))
    assert peak <= 2


@pytest.mark.asyncio
async def test_duplicate_item_names_are_rejected(engine):
    config = MapConfig(item_namer=lambda item, index: item["sku"])

    @engine.workflow("dupes")
    async def dupes(payload, ctx):
        await ctx.map("ship", [{"sku": "A"}, {"sku": "A"}], lambda c, i, n, a: i, config)

    execution_id = await engine.start("dupes")
    await engine.settle(execution_id)

    with pytest.raises(ValidationError):
        await engine.client.wait_for_result(execution_id)


# =============================================================================
# Parallel
# =============================================================================


@pytest.mark.asyncio
async def test_parallel_named_branches(engine):
    async def fetch_user(child):
        return await child.step("fetch", lambda s: {"name": "Ada"})

    async def fetch_orders(child):
        return await child.step("fetch", lambda s: [101, 102])

    @engine.workflow("dashboard")
    async def dashboard(payload, ctx):
        batch = await ctx.parallel("load", {"user": fetch_user, "orders": fetch_orders})
        return {item.name: item.result for item in batch.items}

    execution_id = await engine.start("dashboard")
    await engine.settle(execution_id)

    assert await engine.client.wait_for_result(execution_id) == {
        "user": {"name": "Ada"},
        "orders": [101, 102],
    }
    parallel_op = await engine.operation(execution_id, "load")
    assert parallel_op.operation_type == OperationType.PARALLEL
    branch = await engine.operation(execution_id, "user", parent_id=parallel_op.operation_id)
    assert branch.sub_type == PARALLEL_BRANCH


@pytest.mark.asyncio
async def test_parallel_sequence_branches_are_indexed(engine):
    @engine.workflow("indexed")
    async def indexed(payload, ctx):
        batch = await ctx.parallel("pair", [lambda c: "left", lambda c: "right"])
        return [(item.name, item.result) for item in batch.items]

    execution_id = await engine.start("indexed")
    await engine.settle(execution_id)

    assert await engine.client.wait_for_result(execution_id) == [("0", "left"), ("1", "right")]


@pytest.mark.asyncio
async def test_parallel_rejects_non_callable_branch(engine):
    @engine.workflow("not-callable")
    async def not_callable(payload, ctx):
        await ctx.parallel("pair", [lambda c: 1, "oops"])

    execution_id = await engine.start("not-callable")
    await engine.settle(execution_id)

    with pytest.raises(ValidationError):
        await engine.client.wait_for_result(execution_id)


# =============================================================================
# Child context
# =============================================================================


@pytest.mark.asyncio
async def test_child_context_scopes_names(engine):
    calls = []

    async def refund(child):
        # Same step name as the parent, different scope
        return await child.step("charge", lambda s: calls.append("refund") or -10)

    @engine.workflow("scoped")
    async def scoped(payload, ctx):
        charged = await ctx.step("charge", lambda s: calls.append("charge") or 10)
        refunded = await ctx.run_in_child_context("refund", refund)
        await ctx.wait("pause", 1)
        return charged + refunded

    execution_id = await engine.start("scoped")
    execution = await engine.run_to_end(execution_id, step_seconds=1)

    assert execution.status == ExecutionStatus.SUCCEEDED
    assert await engine.client.wait_for_result(execution_id) == 0
    assert calls == ["charge", "refund"]

    child_op = await engine.operation(execution_id, "refund")
    inner = await engine.operation(execution_id, "charge", parent_id=child_op.operation_id)
    assert inner.operation_id == operation_id(child_op.operation_id, "charge")
    assert inner.operation_id != operation_id(None, "charge")


@pytest.mark.asyncio
async def test_child_context_failure_is_cached(engine):
    calls = []

    def failing(child):
        calls.append("run")
        raise PermissionError("not allowed")

    @engine.workflow("child-fails")
    async def child_fails(payload, ctx):
        try:
            await ctx.run_in_child_context("guarded", failing)
        except PermissionError:
            pass
        await ctx.wait("pause", 1)
        return "recovered"

    execution_id = await engine.start("child-fails")
    await engine.run_to_end(execution_id, step_seconds=1)

    assert await engine.client.wait_for_result(execution_id) == "recovered"
    assert calls == ["run"]
    assert (await engine.operation(execution_id, "guarded")).status == OperationStatus.FAILED


def test_batch_item_status_values():
    assert {status.value for status in BatchItemStatus} == {
        "SUCCEEDED",
        "FAILED",
        "STARTED",
        "NOT_STARTED",
    }
    assert str(CompletionReason.MIN_SUCCESSFUL_REACHED) == "MIN_SUCCESSFUL_REACHED"
