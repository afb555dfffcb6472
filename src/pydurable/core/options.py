"""
Per-operation configuration objects.

Each durable operation accepts an optional config object. All are frozen
dataclasses: build one once at module level and reuse it across replays.

Example:
    ```python
    CHARGE = StepConfig(
        retry_policy=RetryPolicy.exponential(max_attempts=3, initial_delay=timedelta(seconds=1)),
    )

    async def checkout(order, ctx):
        receipt = await ctx.step("charge-card", charge, config=CHARGE)
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from pydurable.models.retry import JitterStrategy, RetryPolicy
from pydurable.serdes import SerDes

# =============================================================================
# Step
# =============================================================================


class StepSemantics(Enum):
    """How many times a step body may run for one retry attempt."""

    AT_MOST_ONCE_PER_RETRY = "AT_MOST_ONCE_PER_RETRY"
    """A RUNNING checkpoint is written before the body runs. An attempt that
    was interrupted is counted as failed and never re-run."""

    AT_LEAST_ONCE_PER_RETRY = "AT_LEAST_ONCE_PER_RETRY"
    """No checkpoint before the body runs. An interrupted attempt is re-run,
    so the body must be idempotent."""


@dataclass(frozen=True)
class StepConfig:
    """
    Attributes:
        retry_policy: Retry policy (None: the engine default)
        semantics: Execution semantics per retry attempt
        serdes: SerDes for the result (None: the engine default)
    """

    retry_policy: RetryPolicy | None = None
    semantics: StepSemantics = StepSemantics.AT_MOST_ONCE_PER_RETRY
    serdes: SerDes | None = None


# =============================================================================
# Callback
# =============================================================================


@dataclass(frozen=True)
class CallbackConfig:
    """
    Attributes:
        timeout: Overall deadline for a success/failure signal (None: no limit
            beyond the execution lifetime)
        heartbeat_timeout: Maximum gap between heartbeats (None: no heartbeats required)
        retry_policy: Retry policy of the submitter step
        serdes: SerDes for the success payload; the client must use the same one
    """

    timeout: timedelta | None = None
    heartbeat_timeout: timedelta | None = None
    retry_policy: RetryPolicy | None = None
    serdes: SerDes | None = None

    def __post_init__(self):
        if self.timeout is not None and self.timeout <= timedelta(0):
            raise ValueError("timeout must be positive")
        if self.heartbeat_timeout is not None and self.heartbeat_timeout <= timedelta(0):
            raise ValueError("heartbeat_timeout must be positive")


# =============================================================================
# Wait for condition
# =============================================================================


@dataclass(frozen=True)
class WaitDecision:
    """Whether to keep polling, and how long to wait before the next check."""

    should_continue: bool
    delay: timedelta = timedelta(0)

    @classmethod
    def stop(cls) -> WaitDecision:
        return cls(should_continue=False)

    @classmethod
    def continue_after(cls, delay: timedelta) -> WaitDecision:
        return cls(should_continue=True, delay=delay)


@dataclass(frozen=True)
class WaitStrategy:
    """
    Poll-with-backoff strategy for wait_for_condition.

    `should_continue(state)` returns True while the condition is not yet met.
    The delay before check N+1 is
    min(initial_delay * backoff_rate**(N-1), max_delay), jittered like a
    RetryPolicy delay.

    Example:
        strategy = WaitStrategy(
            should_continue=lambda job: job["status"] != "DONE",
            max_attempts=20,
            initial_delay=timedelta(seconds=5),
        )
    """

    should_continue: Callable[[Any], bool]
    max_attempts: int = 60
    initial_delay: timedelta = timedelta(seconds=5)
    max_delay: timedelta = timedelta(minutes=5)
    backoff_rate: float = 1.5
    jitter: JitterStrategy = JitterStrategy.NONE

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay <= timedelta(0):
            raise ValueError("initial_delay must be positive")
        if self.backoff_rate < 1.0:
            raise ValueError(f"backoff_rate must be >= 1.0, got {self.backoff_rate}")

    def decide(self, state: Any, attempt: int, seed: str = "") -> WaitDecision:
        """
        Decide what to do after check `attempt` (1-indexed) produced `state`.

        Exhaustion of max_attempts is handled by the caller: this only
        answers "is the condition met, and if not, how long to wait".
        """
        if not self.should_continue(state):
            return WaitDecision.stop()

        # Reuse the retry backoff arithmetic (and its seeded jitter)
        backoff = RetryPolicy(
            max_attempts=attempt + 1,
            initial_delay_ms=int(self.initial_delay.total_seconds() * 1000),
            max_delay_ms=int(self.max_delay.total_seconds() * 1000),
            backoff_multiplier=self.backoff_rate,
            jitter=self.jitter,
        )
        delay_ms = backoff.delay_for_attempt(attempt, seed) or 0
        return WaitDecision.continue_after(timedelta(milliseconds=delay_ms))


@dataclass(frozen=True)
class WaitForConditionConfig:
    """
    Attributes:
        wait_strategy: When to stop polling and how long to wait in between
        initial_state: State passed to the first check
        serdes: SerDes for the state threaded between checks
    """

    wait_strategy: WaitStrategy
    initial_state: Any = None
    serdes: SerDes | None = None


# =============================================================================
# Map / parallel
# =============================================================================


@dataclass(frozen=True)
class CompletionConfig:
    """
    Early-termination policy for map and parallel.

    Evaluated after every branch resolves; whichever threshold is crossed
    first wins. With nothing set, every branch runs and the operation fails
    if any branch failed.

    Attributes:
        min_successful: Stop successfully once this many branches succeeded
        tolerated_failure_count: Stop with failure once failures exceed this
        tolerated_failure_percentage: Stop with failure once the failed share
            of all branches exceeds this (0-100)
    """

    min_successful: int | None = None
    tolerated_failure_count: int | None = None
    tolerated_failure_percentage: float | None = None

    def __post_init__(self):
        if self.min_successful is not None and self.min_successful < 0:
            raise ValueError("min_successful must be non-negative")
        if self.tolerated_failure_count is not None and self.tolerated_failure_count < 0:
            raise ValueError("tolerated_failure_count must be non-negative")
        if self.tolerated_failure_percentage is not None and not (
            0 <= self.tolerated_failure_percentage <= 100
        ):
            raise ValueError("tolerated_failure_percentage must be between 0 and 100")

    @property
    def has_failure_tolerance(self) -> bool:
        return (
            self.tolerated_failure_count is not None
            or self.tolerated_failure_percentage is not None
        )

    @classmethod
    def all_successful(cls) -> CompletionConfig:
        """Stop at the first failure."""
        return cls(tolerated_failure_count=0)

    @classmethod
    def first_successful(cls) -> CompletionConfig:
        """Stop at the first success."""
        return cls(min_successful=1)

    @classmethod
    def all_completed(cls) -> CompletionConfig:
        """Run every branch and accept any number of failures."""
        return cls(tolerated_failure_percentage=100)


def _default_item_name(item: Any, index: int) -> str:
    return str(index)


@dataclass(frozen=True)
class MapConfig:
    """
    Attributes:
        max_concurrency: Maximum branches running at once (None: unbounded)
        completion_config: Early-termination policy
        item_namer: Names each item's branch; names must be unique and stable
            across replays (default: the item index)
        serdes: SerDes for each branch result
    """

    max_concurrency: int | None = None
    completion_config: CompletionConfig = field(default_factory=CompletionConfig)
    item_namer: Callable[[Any, int], str] = _default_item_name
    serdes: SerDes | None = None

    def __post_init__(self):
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")


@dataclass(frozen=True)
class ParallelConfig:
    """
    Attributes:
        max_concurrency: Maximum branches running at once (None: unbounded)
        completion_config: Early-termination policy
        serdes: SerDes for each branch result
    """

    max_concurrency: int | None = None
    completion_config: CompletionConfig = field(default_factory=CompletionConfig)
    serdes: SerDes | None = None

    def __post_init__(self):
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")


# =============================================================================
# Child context
# =============================================================================


@dataclass(frozen=True)
class ChildConfig:
    """
    Attributes:
        serdes: SerDes for the child context's return value
    """

    serdes: SerDes | None = None
