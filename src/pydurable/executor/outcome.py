"""
Replay outcomes and suspension signals.

Design Pattern: State Machine using Union types
A replay either completes (with a terminal ExecutionStatus) or suspends.
ReplayOutcome makes suspension explicit instead of hiding it in timeouts.

Example:
    ```python
    outcome = await orchestrator.run(execution_id)

    match outcome:
        case Completed(status=ExecutionStatus.SUCCEEDED, result=value):
            print(f"Execution completed: {value}")
        case Completed(status=status, result=error):
            print(f"Execution ended {status}: {error}")
        case Suspended(reason):
            print(f"Execution suspended: {reason}")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydurable.models import ExecutionStatus

__all__ = [
    "SuspendReason",
    "Completed",
    "Suspended",
    "ReplayOutcome",
    "is_completed",
    "is_suspended",
    "earliest",
    "_SuspendExecution",
]


# =============================================================================
# Flow Control Signals (Not Errors)
# =============================================================================


class _FlowControl(BaseException):
    """
    Base class for flow control signals.

    Like StopIteration and GeneratorExit, these are control flow mechanisms,
    not errors. They inherit from BaseException so `except Exception:` in
    workflow code never swallows them.
    """

    pass


class _SuspendExecution(_FlowControl):  # noqa: N818
    """
    Signal that the replay cannot make further progress (not an error).

    Raised by wait, wait_for_callback, wait_for_condition, a retrying step,
    and a map/parallel with suspended branches. Unwinds the workflow up to
    the orchestrator, which suspends the execution. All progress is already
    checkpointed when it is raised.

    Attributes:
        wake_at: Earliest time a replay could make progress (None: only an
            external signal can)
        waiting_on: Name of the operation that suspended
    """

    def __init__(self, wake_at: datetime | None = None, waiting_on: str | None = None):
        super().__init__(waiting_on)
        self.wake_at = wake_at
        self.waiting_on = waiting_on


def earliest(times: list[datetime | None]) -> datetime | None:
    """Earliest non-None time, or None."""
    present = [t for t in times if t is not None]
    return min(present) if present else None


@dataclass(frozen=True)
class SuspendReason:
    """
    Why an execution suspended.

    Attributes:
        execution_id: The suspended execution
        wake_at: When a timer will resume it (the lifetime deadline when only a
            signal can)
        waiting_on: Name of the operation that suspended
    """

    execution_id: str
    wake_at: datetime | None = None
    waiting_on: str | None = None

    def is_timer(self) -> bool:
        return self.wake_at is not None

    def __str__(self) -> str:
        if self.is_timer():
            return (
                f"Timer(execution_id={self.execution_id}, waiting_on={self.waiting_on!r}, "
                f"wake_at={self.wake_at.isoformat()})"
            )
        return f"Signal(execution_id={self.execution_id}, waiting_on={self.waiting_on!r})"


@dataclass(frozen=True)
class Completed:
    """
    Execution reached a terminal status.

    Attributes:
        status: SUCCEEDED, FAILED or TIMED_OUT
        result: The workflow's return value, or the exception it ended with
    """

    status: ExecutionStatus
    result: Any = None

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCEEDED

    def is_failure(self) -> bool:
        return self.status != ExecutionStatus.SUCCEEDED

    def __str__(self) -> str:
        if self.is_success():
            return f"Completed(success={self.result!r})"
        return f"Completed({self.status}: {type(self.result).__name__}: {self.result})"


@dataclass(frozen=True)
class Suspended:
    """Execution suspended, waiting for a timer or an external signal."""

    reason: SuspendReason

    def __str__(self) -> str:
        return f"Suspended({self.reason})"


ReplayOutcome = Completed | Suspended


def is_completed(outcome: ReplayOutcome) -> bool:
    """Type guard: check if the outcome is Completed."""
    return isinstance(outcome, Completed)


def is_suspended(outcome: ReplayOutcome) -> bool:
    """Type guard: check if the outcome is Suspended."""
    return isinstance(outcome, Suspended)
