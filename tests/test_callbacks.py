"""Tests for external callbacks: signals, timeouts, heartbeats and duplicate delivery."""

from datetime import timedelta

import pytest

from pydurable import (
    CallbackConfig,
    CallbackError,
    CallbackNotFoundError,
    CallbackStatus,
    CallbackTimeoutError,
    ExecutionStatus,
    OperationStatus,
    RetryPolicy,
    is_completed,
    is_suspended,
)


def approval_workflow(engine, submitted, config=None):
    """Register a workflow that waits for an approval callback."""

    @engine.workflow("approval")
    async def approval(payload, ctx):
        try:
            decision = await ctx.wait_for_callback(
                "manager-approval",
                lambda callback_id, step_ctx: submitted.append(callback_id),
                config or CallbackConfig(timeout=timedelta(hours=1)),
            )
        except CallbackError as e:
            return {"rejected": e.error_type, "reason": e.message}
        except CallbackTimeoutError as e:
            return {"escalated": e.reason}
        return {"approved": decision}

    return approval


@pytest.mark.asyncio
async def test_callback_success(engine):
    submitted = []
    approval_workflow(engine, submitted)

    execution_id = await engine.start("approval", {"amount": 250})
    outcome = await engine.replay(execution_id)

    assert is_suspended(outcome)
    assert outcome.reason.waiting_on == "manager-approval"
    assert len(submitted) == 1
    callback_id = submitted[0]

    token = await engine.storage.get_callback(callback_id)
    assert token.status == CallbackStatus.OPEN
    assert token.execution_id == execution_id

    assert await engine.client.send_callback_success(callback_id, {"by": "grace"})

    execution = await engine.storage.get_execution(execution_id)
    assert execution.status == ExecutionStatus.PENDING

    outcome = await engine.replay(execution_id)
    assert is_completed(outcome)
    assert outcome.result == {"approved": {"by": "grace"}}
    # The submitter ran exactly once
    assert len(submitted) == 1


@pytest.mark.asyncio
async def test_callback_failure_raises_callback_error(engine):
    submitted = []
    approval_workflow(engine, submitted)

    execution_id = await engine.start("approval")
    await engine.settle(execution_id)

    assert await engine.client.send_callback_failure(submitted[0], "Rejected", "over budget")
    await engine.settle(execution_id)

    result = await engine.client.wait_for_result(execution_id)
    assert result == {"rejected": "Rejected", "reason": "over budget"}


@pytest.mark.asyncio
async def test_second_signal_is_ignored(engine):
    submitted = []
    approval_workflow(engine, submitted)

    execution_id = await engine.start("approval")
    await engine.settle(execution_id)
    callback_id = submitted[0]

    assert await engine.client.send_callback_success(callback_id, "first")
    assert not await engine.client.send_callback_success(callback_id, "second")
    assert not await engine.client.send_callback_failure(callback_id, "Late", "too late")
    assert not await engine.client.send_callback_heartbeat(callback_id)

    await engine.settle(execution_id)
    assert await engine.client.wait_for_result(execution_id) == {"approved": "first"}


@pytest.mark.asyncio
async def test_unknown_callback_id(engine):
    with pytest.raises(CallbackNotFoundError):
        await engine.client.send_callback_success("no-such-callback", "value")
    with pytest.raises(CallbackNotFoundError):
        await engine.client.send_callback_failure("no-such-callback", "Error", "message")
    with pytest.raises(CallbackNotFoundError):
        await engine.client.send_callback_heartbeat("no-such-callback")


@pytest.mark.asyncio
async def test_callback_timeout(engine):
    submitted = []
    approval_workflow(engine, submitted, CallbackConfig(timeout=timedelta(minutes=5)))
    started = engine.clock()

    execution_id = await engine.start("approval")
    outcome = await engine.replay(execution_id)
    assert outcome.reason.wake_at == started + timedelta(minutes=5)

    assert await engine.advance(5 * 60) == [execution_id]
    await engine.settle(execution_id)

    assert await engine.client.wait_for_result(execution_id) == {"escalated": "timeout"}
    token = await engine.storage.get_callback(submitted[0])
    assert token.status == CallbackStatus.TIMED_OUT
    op = await engine.operation(execution_id, "manager-approval")
    assert op.status == OperationStatus.FAILED
    assert op.fire_at == started + timedelta(minutes=5)
    # A signal after expiry does not revive the operation
    assert not await engine.client.send_callback_success(submitted[0], "late")


@pytest.mark.asyncio
async def test_callback_does_not_time_out_before_deadline(engine):
    submitted = []
    approval_workflow(engine, submitted, CallbackConfig(timeout=timedelta(minutes=5)))
    started = engine.clock()

    execution_id = await engine.start("approval")
    await engine.settle(execution_id)

    assert await engine.advance(5 * 60 - 1) == []

    # A stray resume one second early re-arms the same deadline
    assert await engine.storage.resume_execution(execution_id, engine.clock())
    outcome = await engine.replay(execution_id)
    assert is_suspended(outcome)
    assert outcome.reason.wake_at == started + timedelta(minutes=5)
    token = await engine.storage.get_callback(submitted[0])
    assert token.status == CallbackStatus.OPEN

    assert await engine.advance(1) == [execution_id]
    await engine.settle(execution_id)
    assert await engine.client.wait_for_result(execution_id) == {"escalated": "timeout"}


@pytest.mark.asyncio
async def test_signal_after_deadline_times_out_the_callback(engine):
    """A success that arrives after the deadline, before any replay noticed it, is rejected."""
    submitted = []
    approval_workflow(engine, submitted, CallbackConfig(timeout=timedelta(minutes=5)))

    execution_id = await engine.start("approval")
    await engine.settle(execution_id)

    # No timer processing runs, so the token is still OPEN when the signal arrives
    engine.clock.advance(timedelta(hours=1))
    assert not await engine.client.send_callback_success(submitted[0], "late")

    token = await engine.storage.get_callback(submitted[0])
    assert token.status == CallbackStatus.TIMED_OUT
    op = await engine.operation(execution_id, "manager-approval")
    assert op.status == OperationStatus.FAILED

    await engine.settle(execution_id)
    assert await engine.client.wait_for_result(execution_id) == {"escalated": "timeout"}


@pytest.mark.asyncio
async def test_heartbeat_after_deadline_does_not_revive(engine):
    submitted = []
    approval_workflow(
        engine,
        submitted,
        CallbackConfig(timeout=timedelta(hours=1), heartbeat_timeout=timedelta(minutes=1)),
    )

    execution_id = await engine.start("approval")
    await engine.settle(execution_id)

    engine.clock.advance(61)
    assert not await engine.client.send_callback_heartbeat(submitted[0])
    assert not await engine.client.send_callback_failure(submitted[0], "Rejected", "too late")

    token = await engine.storage.get_callback(submitted[0])
    assert token.status == CallbackStatus.TIMED_OUT
    await engine.settle(execution_id)
    assert await engine.client.wait_for_result(execution_id) == {"escalated": "heartbeat timeout"}


@pytest.mark.asyncio
async def test_heartbeats_extend_the_deadline(engine):
    submitted = []
    approval_workflow(
        engine,
        submitted,
        CallbackConfig(timeout=timedelta(hours=1), heartbeat_timeout=timedelta(minutes=1)),
    )
    started = engine.clock()

    execution_id = await engine.start("approval")
    outcome = await engine.replay(execution_id)
    assert outcome.reason.wake_at == started + timedelta(minutes=1)

    engine.clock.advance(30)
    assert await engine.client.send_callback_heartbeat(submitted[0])
    token = await engine.storage.get_callback(submitted[0])
    assert token.heartbeat_deadline == started + timedelta(seconds=90)

    # The heartbeat resumes the execution so it re-arms its timer
    outcome = await engine.replay(execution_id)
    assert is_suspended(outcome)
    assert outcome.reason.wake_at == started + timedelta(seconds=90)

    assert await engine.advance(30) == []
    assert await engine.advance(30) == [execution_id]
    await engine.settle(execution_id)

    assert await engine.client.wait_for_result(execution_id) == {"escalated": "heartbeat timeout"}


@pytest.mark.asyncio
async def test_submitter_failure_fails_the_callback(engine):
    def broken_submitter(callback_id, step_ctx):
        raise ValueError("ticket system rejected the request")

    @engine.workflow("broken")
    async def broken(payload, ctx):
        return await ctx.wait_for_callback(
            "approval",
            broken_submitter,
            CallbackConfig(timeout=timedelta(hours=1), retry_policy=RetryPolicy.NONE),
        )

    execution_id = await engine.start("broken")
    execution = await engine.settle(execution_id)

    assert execution.status == ExecutionStatus.FAILED
    op = await engine.operation(execution_id, "approval")
    assert op.status == OperationStatus.FAILED
    token = await engine.storage.get_callback(op.callback_id)
    assert token.status == CallbackStatus.FAILED
    with pytest.raises(ValueError, match="ticket system"):
        await engine.client.wait_for_result(execution_id)


@pytest.mark.asyncio
@pytest.mark.durability
async def test_replay_settles_operation_from_consumed_token(memory_engine):
    """A signal consumed without its operation checkpoint is recovered on replay."""
    engine = memory_engine
    submitted = []
    approval_workflow(engine, submitted)

    execution_id = await engine.start("approval")
    await engine.settle(execution_id)

    # Simulate a signaller that died between consuming the token and the checkpoint
    payload = engine.config.serdes.serialize("recovered")
    assert await engine.storage.resolve_callback(
        submitted[0], CallbackStatus.SUCCEEDED, engine.clock(), result=payload
    )
    op = await engine.operation(execution_id, "manager-approval")
    assert op.status == OperationStatus.WAITING

    assert await engine.storage.resume_execution(execution_id, engine.clock())
    await engine.settle(execution_id)

    assert await engine.client.wait_for_result(execution_id) == {"approved": "recovered"}
    op = await engine.operation(execution_id, "manager-approval")
    assert op.status == OperationStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_signal_during_replay_is_not_lost(memory_engine):
    """A signal delivered while the submitter is still running is picked up by the same replay."""
    engine = memory_engine
    submitted = []

    @engine.workflow("racing")
    async def racing(payload, ctx):
        async def submit_and_answer(callback_id, step_ctx):
            submitted.append(callback_id)
            await engine.client.send_callback_success(callback_id, "fast")

        return await ctx.wait_for_callback(
            "fast-approval", submit_and_answer, CallbackConfig(timeout=timedelta(hours=1))
        )

    execution_id = await engine.start("racing")
    await engine.settle(execution_id)

    assert await engine.client.wait_for_result(execution_id) == "fast"
    assert len(submitted) == 1
