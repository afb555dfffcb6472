"""Status enumerations for durable execution tracking.

Defines lifecycle states for executions, the operations inside them,
and the callback tokens that correlate suspended operations with
external signals.
"""

from enum import Enum


class ExecutionStatus(Enum):
    """Status of one execution of a workflow.

    Lifecycle:
        PENDING → RUNNING → SUSPENDED → PENDING → RUNNING → SUCCEEDED/FAILED/TIMED_OUT

    PENDING means "runnable, waiting for a replay slot". An execution
    enters it on creation and whenever a suspended execution is resumed
    by a timer, callback signal or heartbeat.
    """

    PENDING = "PENDING"
    """Execution is runnable and waiting for a worker to claim it."""

    RUNNING = "RUNNING"
    """A replay of this execution is in progress."""

    SUSPENDED = "SUSPENDED"
    """Execution is waiting for a timer, callback or retry delay."""

    SUCCEEDED = "SUCCEEDED"
    """Workflow returned a value."""

    FAILED = "FAILED"
    """Workflow raised, or the engine hit a fatal error."""

    TIMED_OUT = "TIMED_OUT"
    """Execution exceeded its maximum lifetime."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more replays will run)."""
        return self in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT)

    def __str__(self) -> str:
        return self.value


class OperationStatus(Enum):
    """Status of a single durable operation.

    Lifecycle:
        STEP:     RUNNING → PENDING (retry scheduled) → RUNNING → SUCCEEDED/FAILED
        WAIT:     WAITING → SUCCEEDED
        CALLBACK: WAITING → SUCCEEDED/FAILED
        MAP/PARALLEL/CHILD_CONTEXT: RUNNING → SUCCEEDED/FAILED
    """

    PENDING = "PENDING"
    """Operation is scheduled for another attempt."""

    RUNNING = "RUNNING"
    """Operation body has started but no outcome is checkpointed yet."""

    WAITING = "WAITING"
    """Operation is waiting for a timer or an external signal."""

    SUCCEEDED = "SUCCEEDED"
    """Operation completed with a result."""

    FAILED = "FAILED"
    """Operation completed with an error."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (cached on replay)."""
        return self in (OperationStatus.SUCCEEDED, OperationStatus.FAILED)

    def __str__(self) -> str:
        return self.value


class OperationType(Enum):
    """Kind of durable operation recorded in the log."""

    STEP = "STEP"
    WAIT = "WAIT"
    CALLBACK = "CALLBACK"
    MAP = "MAP"
    PARALLEL = "PARALLEL"
    CHILD_CONTEXT = "CHILD_CONTEXT"

    def __str__(self) -> str:
        return self.value


class CallbackStatus(Enum):
    """Status of a callback token.

    A token is consumed exactly once: OPEN moves to exactly one of the
    terminal states and never back.
    """

    OPEN = "OPEN"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_open(self) -> bool:
        return self == CallbackStatus.OPEN

    def __str__(self) -> str:
        return self.value
