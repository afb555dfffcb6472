"""Results and completion-policy evaluation for map and parallel."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydurable.core.options import CompletionConfig
from pydurable.models.errors import BatchError


class CompletionReason(Enum):
    """Why a map/parallel operation stopped."""

    ALL_COMPLETED = "ALL_COMPLETED"
    MIN_SUCCESSFUL_REACHED = "MIN_SUCCESSFUL_REACHED"
    FAILURE_TOLERANCE_EXCEEDED = "FAILURE_TOLERANCE_EXCEEDED"

    def __str__(self) -> str:
        return self.value


class BatchItemStatus(Enum):
    """Status of one branch at the moment the policy resolved."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    STARTED = "STARTED"
    """Started (running or suspended) but abandoned when the policy resolved."""

    NOT_STARTED = "NOT_STARTED"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BatchItem:
    index: int
    name: str
    status: BatchItemStatus
    result: Any = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == BatchItemStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == BatchItemStatus.FAILED


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of a map or parallel operation.

    Items are in branch (index) order. Branches that had not resolved when
    the completion policy was satisfied appear as STARTED or NOT_STARTED;
    their eventual results, if any, are discarded.

    Example:
        ```python
        batch = await ctx.map("resize", images, resize)
        batch.throw_if_error()
        thumbnails = batch.get_results()
        ```
    """

    items: list[BatchItem]
    completion_reason: CompletionReason
    policy_met: bool
    resolution_order: list[str] = field(default_factory=list)
    """Branch names in the order the completion policy observed them."""

    def successes(self) -> list[BatchItem]:
        return [item for item in self.items if item.succeeded]

    def failures(self) -> list[BatchItem]:
        return [item for item in self.items if item.failed]

    @property
    def success_count(self) -> int:
        return len(self.successes())

    @property
    def failure_count(self) -> int:
        return len(self.failures())

    @property
    def started_count(self) -> int:
        return sum(1 for item in self.items if item.status == BatchItemStatus.STARTED)

    @property
    def total_count(self) -> int:
        return len(self.items)

    def get_results(self) -> list[Any]:
        """Results of the successful branches, in branch order."""
        return [item.result for item in self.successes()]

    def get_errors(self) -> list[BaseException]:
        return [item.error for item in self.failures() if item.error is not None]

    def throw_if_error(self) -> None:
        """
        Raise BatchError if the completion policy was not met.

        Failures tolerated by the policy do not raise.
        """
        if self.policy_met:
            return
        raise BatchError(
            f"{self.failure_count} of {self.total_count} branches failed "
            f"({self.completion_reason})",
            self.get_errors(),
        )


class CompletionTracker:
    """
    Feeds branch resolutions to a CompletionConfig.

    record() returns the CompletionReason once the policy resolves, None
    while more resolutions are needed.
    """

    def __init__(self, total: int, config: CompletionConfig):
        self.total = total
        self.config = config
        self.successes = 0
        self.failures = 0

    @property
    def resolved(self) -> int:
        return self.successes + self.failures

    def record(self, succeeded: bool) -> CompletionReason | None:
        if succeeded:
            self.successes += 1
        else:
            self.failures += 1
        return self.check()

    def check(self) -> CompletionReason | None:
        config = self.config
        if config.min_successful is not None and self.successes >= config.min_successful:
            return CompletionReason.MIN_SUCCESSFUL_REACHED
        if self._tolerance_exceeded():
            return CompletionReason.FAILURE_TOLERANCE_EXCEEDED
        if config.min_successful is not None:
            remaining = self.total - self.resolved
            if self.successes + remaining < config.min_successful:
                # min_successful can no longer be reached
                return CompletionReason.FAILURE_TOLERANCE_EXCEEDED
        if self.resolved >= self.total:
            return CompletionReason.ALL_COMPLETED
        return None

    def _tolerance_exceeded(self) -> bool:
        config = self.config
        if config.tolerated_failure_count is not None:
            if self.failures > config.tolerated_failure_count:
                return True
        if config.tolerated_failure_percentage is not None and self.total > 0:
            if self.failures * 100.0 / self.total > config.tolerated_failure_percentage:
                return True
        return False

    def policy_met(self, reason: CompletionReason) -> bool:
        if reason == CompletionReason.MIN_SUCCESSFUL_REACHED:
            return True
        if reason == CompletionReason.FAILURE_TOLERANCE_EXCEEDED:
            return False
        # ALL_COMPLETED
        if self.config.min_successful is not None and self.successes < self.config.min_successful:
            return False
        if not self.config.has_failure_tolerance and self.config.min_successful is None:
            return self.failures == 0
        return True
