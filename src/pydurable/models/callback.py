"""CallbackToken correlates a WAITING operation with an external signal."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from pydurable.models.errors import ErrorObject
from pydurable.models.status import CallbackStatus


@dataclass(frozen=True)
class CallbackToken:
    """
    Opaque handle given to an external system.

    Lifecycle:
        Created (OPEN) when a CALLBACK operation first suspends.
        Consumed exactly once by success, failure or timeout.
        Heartbeats extend heartbeat_deadline while OPEN.

    The outcome of the signal (result or error) is stored on the token when
    it is consumed, so a replay can settle the operation even if the
    signaller died before checkpointing it.
    """

    callback_id: str
    execution_id: str
    operation_id: str
    operation_name: str
    status: CallbackStatus = CallbackStatus.OPEN
    timeout_at: datetime | None = None
    """Overall deadline for a success/failure signal."""

    heartbeat_timeout: timedelta | None = None
    """Maximum gap between heartbeats."""

    heartbeat_deadline: datetime | None = None
    """When the current heartbeat window closes."""

    created_at: datetime | None = None
    resolved_at: datetime | None = None

    result: bytes | None = None
    """Serialized success payload, set when consumed by a success signal."""

    error: ErrorObject | None = None
    """Failure or timeout error, set when consumed by a failure signal or expiry."""

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def next_deadline(self) -> datetime | None:
        """Earliest of the overall and heartbeat deadlines."""
        deadlines = [d for d in (self.timeout_at, self.heartbeat_deadline) if d is not None]
        return min(deadlines) if deadlines else None

    def expired_reason(self, now: datetime) -> str | None:
        """Return why the token has expired at `now`, or None if it has not."""
        if self.timeout_at is not None and now >= self.timeout_at:
            return "timeout"
        if self.heartbeat_deadline is not None and now >= self.heartbeat_deadline:
            return "heartbeat timeout"
        return None

    def update(self, **changes: Any) -> CallbackToken:
        return replace(self, **changes)
