"""Timer information for due suspended executions."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class TimerInfo:
    """
    A suspended execution whose wake-up time has passed.

    Returned by ExecutionLog.get_expired_timers() to the worker, which
    resumes the execution so a replay can observe the fired timer,
    the expired callback deadline or the due retry.

    Attributes:
        execution_id: Suspended execution to resume
        fire_at: The wake-up time that expired
    """

    execution_id: str
    fire_at: datetime
