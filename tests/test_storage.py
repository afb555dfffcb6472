"""Contract tests for ExecutionLog backends (in-memory and SQLite)."""

from datetime import UTC, datetime, timedelta

import pytest

from pydurable import (
    CallbackStatus,
    CallbackToken,
    ErrorObject,
    Execution,
    ExecutionStatus,
    LeaseLostError,
    Operation,
    OperationStatus,
    OperationType,
    StorageError,
)
from pydurable.core.identity import operation_id
from pydurable.storage.base import TimerNotificationSource, WorkNotificationSource

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def new_execution(execution_id: str = "exec-1", **changes) -> Execution:
    execution = Execution(
        execution_id=execution_id,
        workflow_name="orders",
        workflow_version="1",
        input=b"payload",
        created_at=NOW,
        updated_at=NOW,
    )
    return execution.update(**changes) if changes else execution


def new_step(execution_id: str, name: str, **changes) -> Operation:
    return Operation(
        operation_id=operation_id(None, name),
        execution_id=execution_id,
        name=name,
        operation_type=OperationType.STEP,
        started_at=NOW,
        **changes,
    )


async def running(storage, execution_id: str = "exec-1") -> Execution:
    await storage.create_execution(new_execution(execution_id))
    return await storage.claim_execution(execution_id, "worker-1", NOW)


# =============================================================================
# Executions
# =============================================================================


@pytest.mark.asyncio
async def test_create_execution_is_idempotent(storage):
    stored, created = await storage.create_execution(new_execution())
    assert created
    assert stored.status == ExecutionStatus.PENDING

    again, created = await storage.create_execution(new_execution(input=b"other"))
    assert not created
    assert again.input == b"payload"


@pytest.mark.asyncio
async def test_get_missing_execution(storage):
    assert await storage.get_execution("missing") is None


@pytest.mark.asyncio
async def test_list_executions_filters_by_status(storage):
    await storage.create_execution(new_execution("a"))
    await storage.create_execution(new_execution("b"))
    await storage.claim_execution("b", "worker-1", NOW)

    assert [e.execution_id for e in await storage.list_executions()] == ["a", "b"]
    pending = await storage.list_executions(ExecutionStatus.PENDING)
    assert [e.execution_id for e in pending] == ["a"]


@pytest.mark.asyncio
async def test_claim_only_pending(storage):
    await storage.create_execution(new_execution())

    claimed = await storage.claim_execution("exec-1", "worker-1", NOW)
    assert claimed.status == ExecutionStatus.RUNNING
    assert claimed.locked_by == "worker-1"
    assert claimed.locked_at == NOW
    assert claimed.replay_count == 1

    # A RUNNING execution cannot be claimed twice
    assert await storage.claim_execution("exec-1", "worker-2", NOW) is None
    assert await storage.claim_execution("missing", "worker-2", NOW) is None


@pytest.mark.asyncio
async def test_dequeue_takes_oldest_pending(storage):
    await storage.create_execution(new_execution("first"))
    await storage.create_execution(new_execution("second"))

    assert (await storage.dequeue_execution("worker-1", NOW)).execution_id == "first"
    assert (await storage.dequeue_execution("worker-2", NOW)).execution_id == "second"
    assert await storage.dequeue_execution("worker-3", NOW) is None


@pytest.mark.asyncio
async def test_suspend_and_resume(storage):
    await running(storage)
    wake_at = NOW + timedelta(minutes=5)

    suspended = await storage.suspend_execution("exec-1", wake_at, NOW)
    assert suspended.status == ExecutionStatus.SUSPENDED
    assert suspended.wake_at == wake_at
    assert suspended.locked_by is None

    assert await storage.resume_execution("exec-1", NOW)
    execution = await storage.get_execution("exec-1")
    assert execution.status == ExecutionStatus.PENDING
    assert execution.wake_at is None

    # Already PENDING
    assert not await storage.resume_execution("exec-1", NOW)
    assert not await storage.resume_execution("missing", NOW)


@pytest.mark.asyncio
async def test_resume_while_running_requeues_on_suspend(storage):
    """A signal that lands during a replay is not lost."""
    await running(storage)

    assert await storage.resume_execution("exec-1", NOW)
    execution = await storage.get_execution("exec-1")
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.resume_requested

    suspended = await storage.suspend_execution("exec-1", NOW + timedelta(hours=1), NOW)
    assert suspended.status == ExecutionStatus.PENDING
    assert suspended.wake_at is None
    assert not suspended.resume_requested


@pytest.mark.asyncio
async def test_complete_execution(storage):
    await running(storage)

    completed = await storage.complete_execution(
        "exec-1", ExecutionStatus.SUCCEEDED, NOW, output=b"result"
    )
    assert completed.status == ExecutionStatus.SUCCEEDED
    assert completed.output == b"result"
    assert completed.completed_at == NOW
    assert completed.locked_by is None

    # Terminal executions cannot be resumed
    assert not await storage.resume_execution("exec-1", NOW)


@pytest.mark.asyncio
async def test_complete_execution_keeps_error(storage):
    await running(storage)
    error = ErrorObject.from_exception(ValueError("bad input"))

    completed = await storage.complete_execution("exec-1", ExecutionStatus.FAILED, NOW, error=error)

    assert completed.error.message == "bad input"
    assert isinstance(completed.error.to_exception(), ValueError)


@pytest.mark.asyncio
async def test_complete_execution_rejects_non_terminal_status(storage):
    await running(storage)
    with pytest.raises(StorageError):
        await storage.complete_execution("exec-1", ExecutionStatus.SUSPENDED, NOW)


@pytest.mark.asyncio
async def test_recover_stale_executions(storage):
    await running(storage, "stale")
    await storage.create_execution(new_execution("fresh"))
    await storage.claim_execution("fresh", "worker-2", NOW + timedelta(minutes=20))

    later = NOW + timedelta(minutes=30)
    assert await storage.recover_stale_executions(NOW + timedelta(minutes=10), later) == 1

    stale = await storage.get_execution("stale")
    assert stale.status == ExecutionStatus.PENDING
    assert stale.locked_by is None
    assert (await storage.get_execution("fresh")).status == ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_renew_lease(storage):
    claimed = await running(storage)
    later = NOW + timedelta(minutes=20)

    assert await storage.renew_lease("exec-1", claimed.replay_count, later)
    assert (await storage.get_execution("exec-1")).locked_at == later
    # A renewed lease is not stale
    assert await storage.recover_stale_executions(NOW + timedelta(minutes=10), later) == 0

    assert not await storage.renew_lease("exec-1", claimed.replay_count + 1, later)
    assert not await storage.renew_lease("missing", 1, later)


@pytest.mark.asyncio
async def test_writes_after_takeover_are_rejected(storage):
    first = await running(storage)
    later = NOW + timedelta(minutes=30)
    assert await storage.recover_stale_executions(NOW + timedelta(minutes=10), later) == 1
    second = await storage.claim_execution("exec-1", "worker-2", later)
    assert second.replay_count == first.replay_count + 1

    with pytest.raises(LeaseLostError):
        await storage.checkpoint("exec-1", new_step("exec-1", "charge"), lease=first.replay_count)
    with pytest.raises(LeaseLostError):
        await storage.suspend_execution("exec-1", later, later, lease=first.replay_count)
    with pytest.raises(LeaseLostError):
        await storage.complete_execution(
            "exec-1", ExecutionStatus.SUCCEEDED, later, output=b"x", lease=first.replay_count
        )
    assert await storage.get_operations("exec-1") == []
    assert (await storage.get_execution("exec-1")).status == ExecutionStatus.RUNNING

    # The current holder and unfenced writers still get through
    await storage.checkpoint("exec-1", new_step("exec-1", "charge"), lease=second.replay_count)
    await storage.checkpoint("exec-1", new_step("exec-1", "notify"))
    completed = await storage.complete_execution(
        "exec-1", ExecutionStatus.SUCCEEDED, later, output=b"x", lease=second.replay_count
    )
    assert completed.status == ExecutionStatus.SUCCEEDED

    # A released lease fences too
    with pytest.raises(LeaseLostError):
        await storage.checkpoint("exec-1", new_step("exec-1", "late"), lease=second.replay_count)


# =============================================================================
# Timers
# =============================================================================


@pytest.mark.asyncio
async def test_expired_timers_in_fire_order(storage):
    for name, minutes in (("late", 10), ("early", 5), ("future", 60)):
        await running(storage, name)
        await storage.suspend_execution(name, NOW + timedelta(minutes=minutes), NOW)
    # Signal-only suspension has no timer
    await running(storage, "signal")
    await storage.suspend_execution("signal", None, NOW)

    assert await storage.get_next_timer_fire_time() == NOW + timedelta(minutes=5)

    expired = await storage.get_expired_timers(NOW + timedelta(minutes=30))
    assert [t.execution_id for t in expired] == ["early", "late"]
    assert expired[0].fire_at == NOW + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_no_timers(storage):
    assert await storage.get_next_timer_fire_time() is None
    assert await storage.get_expired_timers(NOW) == []


# =============================================================================
# Operation log
# =============================================================================


@pytest.mark.asyncio
async def test_checkpoint_keeps_first_write_order(storage):
    await running(storage)

    await storage.checkpoint("exec-1", new_step("exec-1", "b"))
    await storage.checkpoint("exec-1", new_step("exec-1", "a"))
    await storage.checkpoint("exec-1", new_step("exec-1", "b").succeed(b"1", NOW))

    names = [op.name for op in await storage.get_operations("exec-1")]
    assert names == ["b", "a"]


@pytest.mark.asyncio
async def test_terminal_operation_is_immutable(storage):
    await running(storage)
    op = new_step("exec-1", "charge", attempt=1)

    await storage.checkpoint("exec-1", op.succeed(b"first", NOW))
    stored = await storage.checkpoint("exec-1", op.succeed(b"second", NOW))

    assert stored.result == b"first"
    assert (await storage.get_operation("exec-1", op.operation_id)).result == b"first"


@pytest.mark.asyncio
async def test_operation_fields_round_trip(storage):
    await running(storage)
    op = new_step(
        "exec-1",
        "poll",
        sub_type="WaitForCondition",
        sequence=3,
        status=OperationStatus.PENDING,
        attempt=2,
        result=b"state",
        error=ErrorObject.from_exception(TimeoutError("upstream")),
        fire_at=NOW + timedelta(seconds=30),
        details={"resolution": 1},
    )

    await storage.checkpoint("exec-1", op)
    stored = await storage.get_operation("exec-1", op.operation_id)

    assert stored.sub_type == "WaitForCondition"
    assert stored.sequence == 3
    assert stored.status == OperationStatus.PENDING
    assert stored.attempt == 2
    assert stored.result == b"state"
    assert stored.error.message == "upstream"
    assert stored.fire_at == NOW + timedelta(seconds=30)
    assert stored.details == {"resolution": 1}


@pytest.mark.asyncio
async def test_checkpoint_requires_execution(storage):
    with pytest.raises(StorageError):
        await storage.checkpoint("missing", new_step("missing", "a"))


# =============================================================================
# Callback tokens
# =============================================================================


def new_token(**changes) -> CallbackToken:
    token = CallbackToken(
        callback_id="cb-1",
        execution_id="exec-1",
        operation_id=operation_id(None, "approval"),
        operation_name="approval",
        timeout_at=NOW + timedelta(hours=1),
        created_at=NOW,
    )
    return token.update(**changes) if changes else token


@pytest.mark.asyncio
async def test_register_callback_is_idempotent(storage):
    await running(storage)

    await storage.register_callback(new_token())
    again = await storage.register_callback(new_token(timeout_at=NOW))

    assert again.timeout_at == NOW + timedelta(hours=1)
    assert (await storage.get_callback("cb-1")).status == CallbackStatus.OPEN
    assert await storage.get_callback("missing") is None


@pytest.mark.asyncio
async def test_resolve_callback_consumes_once(storage):
    await running(storage)
    await storage.register_callback(new_token())

    assert await storage.resolve_callback("cb-1", CallbackStatus.SUCCEEDED, NOW, result=b"yes")
    assert not await storage.resolve_callback(
        "cb-1", CallbackStatus.FAILED, NOW, error=ErrorObject.from_signal("Late", "too late")
    )
    assert not await storage.resolve_callback("missing", CallbackStatus.SUCCEEDED, NOW)

    token = await storage.get_callback("cb-1")
    assert token.status == CallbackStatus.SUCCEEDED
    assert token.result == b"yes"
    assert token.resolved_at == NOW
    assert token.error is None


@pytest.mark.asyncio
async def test_heartbeat_extends_deadline(storage):
    await running(storage)
    await storage.register_callback(
        new_token(heartbeat_timeout=timedelta(minutes=2), heartbeat_deadline=NOW + timedelta(minutes=2))
    )

    later = NOW + timedelta(minutes=1)
    token = await storage.heartbeat_callback("cb-1", later)
    assert token.heartbeat_deadline == later + timedelta(minutes=2)

    await storage.resolve_callback("cb-1", CallbackStatus.SUCCEEDED, later)
    assert await storage.heartbeat_callback("cb-1", later) is None


# =============================================================================
# Notifications and lifecycle
# =============================================================================


@pytest.mark.asyncio
async def test_backends_notify_workers(storage):
    assert isinstance(storage, WorkNotificationSource)
    assert isinstance(storage, TimerNotificationSource)

    storage.work_notify().clear()
    await storage.create_execution(new_execution())
    assert storage.work_notify().is_set()

    await storage.claim_execution("exec-1", "worker-1", NOW)
    storage.timer_notify().clear()
    await storage.suspend_execution("exec-1", NOW + timedelta(seconds=5), NOW)
    assert storage.timer_notify().is_set()


@pytest.mark.asyncio
async def test_reset_clears_everything(storage):
    await running(storage)
    await storage.checkpoint("exec-1", new_step("exec-1", "a"))
    await storage.register_callback(new_token())

    await storage.reset()

    assert await storage.get_execution("exec-1") is None
    assert await storage.get_operations("exec-1") == []
    assert await storage.get_callback("cb-1") is None
