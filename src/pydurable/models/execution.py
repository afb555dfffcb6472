"""Execution: one logical run of a workflow.

Owned exclusively by the engine. Created on first invocation with a
given execution id, mutated only through ExecutionLog transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from pydurable.models.errors import ErrorObject
from pydurable.models.status import ExecutionStatus


@dataclass(frozen=True)
class Execution:
    """
    Snapshot of an execution record.

    Attributes:
        execution_id: Caller-supplied execution name (idempotency key)
        workflow_name: Registered name of the workflow handler
        workflow_version: Version of the handler that owns this execution
        input: Serialized input payload
        status: Current lifecycle status
        output: Serialized result (SUCCEEDED only)
        error: Terminal error (FAILED/TIMED_OUT only)
        created_at: When the execution was created
        last_resumed_at: When the latest replay started
        updated_at: Last status change
        completed_at: When a terminal status was recorded
        wake_at: Earliest deadline that should resume a SUSPENDED execution
        locked_by: Worker currently holding the replay lease
        locked_at: When the lease was taken
        resume_requested: A resume signal arrived while RUNNING
        replay_count: Number of replays started so far
    """

    execution_id: str
    workflow_name: str
    workflow_version: str
    input: bytes
    status: ExecutionStatus = ExecutionStatus.PENDING
    output: bytes | None = None
    error: ErrorObject | None = None
    created_at: datetime | None = None
    last_resumed_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    wake_at: datetime | None = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    resume_requested: bool = False
    replay_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def update(self, **changes: Any) -> Execution:
        """Return a copy with the given fields changed."""
        return replace(self, **changes)

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"Execution(execution_id={self.execution_id!r}, "
            f"workflow={self.workflow_name}@{self.workflow_version}, status={self.status})"
        )
