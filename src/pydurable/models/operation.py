"""
Operation represents one durable unit inside an execution.

Design principles:
- Value object: every state transition produces a new record through
  the with_* helpers, the stored record is never mutated in place
- Serialization-friendly: all fields are basic types, bytes, datetimes
  or ErrorObject
- Identity is name-based: operation_id is derived from the enclosing
  context's id and the operation name, never from call position
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from pydurable.models.errors import ErrorObject
from pydurable.models.status import OperationStatus, OperationType


@dataclass(frozen=True)
class Operation:
    """
    Snapshot of one durable operation.

    An Operation tracks everything about a step, wait, callback, map,
    parallel or child context:
    - Identity (operation_id, execution_id, name, parent_id)
    - Kind (operation_type, sub_type)
    - Position (sequence within the enclosing context, for diagnostics)
    - Outcome (status, result bytes or ErrorObject)
    - Retry metadata (attempt, fire_at for the next attempt)
    - Suspension metadata (fire_at for waits, callback_id for callbacks)
    """

    operation_id: str
    """Stable id: hash of parent_id and name."""

    execution_id: str
    """Execution this operation belongs to."""

    name: str
    """Name given by workflow code, unique within the enclosing context."""

    operation_type: OperationType

    parent_id: str | None = None
    """Operation id of the enclosing context, None at the workflow root."""

    sub_type: str | None = None
    """Finer-grained kind, e.g. 'WaitForCondition' or 'MapIteration'."""

    sequence: int = 0
    """Position within the enclosing context when first started."""

    status: OperationStatus = OperationStatus.RUNNING

    attempt: int = 0
    """Number of attempts started (steps and condition checks)."""

    result: bytes | None = None
    """Serialized result; for condition checks, the latest serialized state."""

    error: ErrorObject | None = None
    """Checkpointed error for FAILED operations, or the last retry error."""

    started_at: datetime | None = None

    ended_at: datetime | None = None

    fire_at: datetime | None = None
    """Wait deadline, or when the next attempt may run. Kept on terminal records."""

    callback_id: str | None = None
    """Callback token id for CALLBACK operations."""

    details: dict[str, Any] = field(default_factory=dict)
    """Small diagnostic payload (completion reason, counters)."""

    def __post_init__(self):
        """Validate invariants after creation."""
        if self.attempt < 0:
            raise ValueError(f"attempt must be non-negative, got {self.attempt}")
        if self.status == OperationStatus.FAILED and self.error is None:
            raise ValueError("error must be set when status is FAILED")

    @property
    def is_terminal(self) -> bool:
        """Check if this operation has a cached outcome."""
        return self.status.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.status == OperationStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == OperationStatus.FAILED

    def is_due(self, now: datetime) -> bool:
        """Check if the fire time (if any) has passed."""
        return self.fire_at is None or now >= self.fire_at

    # ==========================================================================
    # Transitions
    # ==========================================================================

    def with_status(self, status: OperationStatus, **changes: Any) -> Operation:
        """Return a copy with a new status and any other field changes."""
        return replace(self, status=status, **changes)

    def succeed(self, result: bytes | None, now: datetime) -> Operation:
        """Return the SUCCEEDED version of this operation."""
        return replace(
            self,
            status=OperationStatus.SUCCEEDED,
            result=result,
            error=None,
            ended_at=now,
        )

    def fail(self, error: ErrorObject, now: datetime) -> Operation:
        """Return the FAILED version of this operation."""
        return replace(
            self,
            status=OperationStatus.FAILED,
            error=error,
            ended_at=now,
        )

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"Operation(name={self.name!r}, type={self.operation_type}, "
            f"status={self.status}, attempt={self.attempt}, "
            f"operation_id={self.operation_id!r})"
        )
