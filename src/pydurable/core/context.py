"""Workflow-facing durable context.

Every workflow handler receives a DurableContext. Each durable call
(`step`, `wait`, `wait_for_callback`, `wait_for_condition`, `map`,
`parallel`, `run_in_child_context`) is identified by its name within the
context, looked up in the operation log, and either answered from the
log or executed and checkpointed.

Design: Naming Scope
    A DurableContext is a naming scope. The root context has no parent;
    child contexts (run_in_child_context, map and parallel branches, the
    callback submitter) are scoped by the operation that created them, so
    the same name may be reused in different branches.

Usage:
    ```python
    @durable_workflow(name="onboarding")
    async def onboarding(user, ctx: DurableContext):
        account = await ctx.step("create-account", lambda s: accounts.create(user))
        await ctx.wait("cooling-off", timedelta(days=1))
        approval = await ctx.wait_for_callback(
            "manager-approval",
            lambda callback_id, s: tickets.open(account, callback_id),
            config=CallbackConfig(timeout=timedelta(days=7)),
        )
        return {"account": account, "approved": approval}
    ```
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import timedelta
from typing import Any, TypeVar

from pydurable.core.identity import operation_id
from pydurable.core.logger import ReplayAwareLogger
from pydurable.core.options import (
    CallbackConfig,
    ChildConfig,
    MapConfig,
    ParallelConfig,
    StepConfig,
    WaitForConditionConfig,
)
from pydurable.core.state import IN_STEP, ExecutionState
from pydurable.core.step_context import StepContext
from pydurable.executor.callback import run_wait_for_callback
from pydurable.executor.child import run_in_child_context
from pydurable.executor.concurrency import run_map, run_parallel
from pydurable.executor.condition import run_wait_for_condition
from pydurable.executor.step import run_step
from pydurable.executor.wait import run_wait
from pydurable.models import Operation, OperationType
from pydurable.models.errors import (
    DuplicateOperationError,
    NestedOperationError,
    ReplayDivergenceError,
    UnrecoverableExecutionError,
    ValidationError,
)
from pydurable.serdes import SerDes, deserialize

T = TypeVar("T")


class DurableContext:
    """Durable operation API for one naming scope of an execution."""

    def __init__(self, state: ExecutionState, parent_id: str | None = None):
        self._state = state
        self._parent_id = parent_id
        self._names: set[str] = set()
        self._sequence = 0
        self._logger: ReplayAwareLogger | None = None

    def __repr__(self) -> str:
        return f"DurableContext(execution_id={self.execution_id!r}, parent_id={self._parent_id!r})"

    @property
    def execution_id(self) -> str:
        return self._state.execution_id

    @property
    def parent_id(self) -> str | None:
        """Operation id that scopes this context (None at the workflow root)."""
        return self._parent_id

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def logger(self) -> ReplayAwareLogger:
        """Logger that stays silent while the replay re-walks recorded operations."""
        if self._logger is None:
            self._logger = ReplayAwareLogger(self._state)
        return self._logger

    # =========================================================================
    # Operation bookkeeping (used by the executor modules)
    # =========================================================================

    def begin_operation(
        self, name: str, operation_type: OperationType, sub_type: str | None = None
    ) -> tuple[str, int, Operation | None]:
        """
        Register a durable call and look it up in the log.

        Returns:
            (operation_id, sequence, recorded operation or None)

        Raises:
            The recorded fatal error if the replay already hit one
            NestedOperationError: called from inside a step body
            ValidationError: invalid name
            DuplicateOperationError: name already used in this context
            ReplayDivergenceError: the log recorded a different kind of operation under this name
        """
        state = self._state
        if state.fatal_error is not None:
            raise state.fatal_error

        running_step = IN_STEP.get()
        if running_step is not None:
            raise state.record_fatal(
                NestedOperationError(
                    f"Durable operation {name!r} called inside step {running_step!r}"
                )
            )

        if not isinstance(name, str) or not name:
            raise ValidationError(f"Operation name must be a non-empty string, got {name!r}")

        if name in self._names:
            raise state.record_fatal(
                DuplicateOperationError(f"Operation name {name!r} used twice in the same context")
            )
        self._names.add(name)

        op_id = operation_id(self._parent_id, name)
        sequence = self._sequence
        self._sequence += 1

        existing = state.get(op_id)
        if existing is not None:
            if (
                existing.operation_type != operation_type
                or existing.name != name
                or existing.sub_type != sub_type
            ):
                raise state.record_fatal(
                    ReplayDivergenceError(
                        f"Operation {name!r} was recorded as {existing.operation_type}"
                        f"{'/' + existing.sub_type if existing.sub_type else ''} but replay issued "
                        f"{operation_type}{'/' + sub_type if sub_type else ''}"
                    )
                )
            state.mark_visited(op_id)

        return op_id, sequence, existing

    def cached_result(self, operation: Operation, serdes: SerDes | None = None) -> Any:
        """Return the recorded result of a terminal operation, or raise its recorded error."""
        if operation.succeeded:
            return deserialize(operation.result, serdes or self._state.serdes)

        error = operation.error.to_exception()
        if isinstance(error, UnrecoverableExecutionError):
            self._state.record_fatal(error)
        raise error

    def child_context(self, parent_id: str) -> DurableContext:
        return DurableContext(self._state, parent_id)

    # =========================================================================
    # Durable operations
    # =========================================================================

    async def step(
        self,
        name: str,
        fn: Callable[[StepContext], T | Awaitable[T]],
        config: StepConfig | None = None,
    ) -> T:
        """
        Run `fn(step_ctx)` once and checkpoint its result.

        On replay the recorded result is returned (or the recorded error
        raised) without running `fn` again. Failures are retried according
        to the step's retry policy.
        """
        return await run_step(self, name, fn, config or StepConfig())

    async def wait(self, name: str, duration: timedelta | float) -> None:
        """Suspend the execution for `duration` (timedelta or seconds)."""
        await run_wait(self, name, duration)

    async def wait_for_callback(
        self,
        name: str,
        submit_fn: Callable[[str, StepContext], Any],
        config: CallbackConfig | None = None,
    ) -> Any:
        """
        Suspend until an external system signals the callback.

        `submit_fn(callback_id, step_ctx)` runs once as a step and should
        hand the callback id to the external system. Returns the success
        payload; raises CallbackError on a failure signal and
        CallbackTimeoutError when the timeout or heartbeat timeout elapses.
        """
        return await run_wait_for_callback(self, name, submit_fn, config or CallbackConfig())

    async def wait_for_condition(
        self,
        name: str,
        check_fn: Callable[[Any, StepContext], Any],
        config: WaitForConditionConfig,
    ) -> Any:
        """
        Poll `check_fn(state, step_ctx)` with backoff until the wait strategy stops.

        Returns the final state; raises WaitForConditionTimeoutError when
        the strategy's max attempts are exhausted.
        """
        return await run_wait_for_condition(self, name, check_fn, config)

    async def map(
        self,
        name: str,
        items: Sequence[Any],
        fn: Callable[[DurableContext, Any, int, Sequence[Any]], Any],
        config: MapConfig | None = None,
    ):
        """Run `fn(child_ctx, item, index, items)` for every item as concurrent branches."""
        return await run_map(self, name, items, fn, config or MapConfig())

    async def parallel(
        self,
        name: str,
        branches: Sequence[Callable[[DurableContext], Any]] | Mapping[str, Callable[[DurableContext], Any]],
        config: ParallelConfig | None = None,
    ):
        """Run each `branch(child_ctx)` concurrently. A mapping names its branches."""
        return await run_parallel(self, name, branches, config or ParallelConfig())

    async def run_in_child_context(
        self,
        name: str,
        fn: Callable[[DurableContext], T | Awaitable[T]],
        config: ChildConfig | None = None,
    ) -> T:
        """Run `fn(child_ctx)` in its own naming scope and checkpoint its result."""
        return await run_in_child_context(self, name, fn, config or ChildConfig())
