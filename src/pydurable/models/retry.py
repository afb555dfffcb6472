"""
Retry policy configuration and evaluation for step execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, allowing different retry strategies
without modifying the step executor.

The evaluator is a pure function of (error, attempt, policy, seed):
- No wall-clock reads
- Jitter drawn from a random.Random seeded by (seed, attempt)

so a replay that recomputes a decision gets the same answer. In practice
the decision is checkpointed (as the next attempt's fire time) and never
recomputed, but the determinism keeps tests and replays honest.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, cast

from pydurable.models.errors import (
    ErrorCategory,
    FatalExecutionError,
    UnrecoverableError,
    classify_error,
)


class JitterStrategy(Enum):
    """How to randomize a computed backoff delay."""

    NONE = "NONE"
    """Use the computed delay as-is."""

    FULL = "FULL"
    """Uniform in [0, delay]."""

    HALF = "HALF"
    """Uniform in [delay / 2, delay]."""


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of evaluating a retry policy for one failed attempt."""

    should_retry: bool
    delay: timedelta = timedelta(0)

    @classmethod
    def retry(cls, delay: timedelta) -> RetryDecision:
        return cls(should_retry=True, delay=delay)

    @classmethod
    def no_retry(cls) -> RetryDecision:
        return cls(should_retry=False)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for step retry behavior.

    Controls how many times a step is attempted on errors and the backoff
    between attempts.

    Examples:
        # Simple: just specify max attempts (uses standard delays)
        policy = RetryPolicy.with_max_attempts(3)

        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Exponential backoff with jitter
        policy = RetryPolicy.exponential(
            max_attempts=5,
            initial_delay=timedelta(seconds=1),
            rate=2.0,
            max_delay=timedelta(seconds=30),
            jitter=JitterStrategy.FULL,
        )

        # Fixed delay, only for transient errors
        policy = RetryPolicy.fixed(timedelta(seconds=5), max_attempts=4)
    """

    max_attempts: int
    """Maximum number of attempts (including the first try).

    For example, max_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Attempt 2: after initial_delay
    - Attempt 3: after initial_delay * backoff_multiplier
    """

    initial_delay_ms: int
    """Delay before the first retry in milliseconds."""

    max_delay_ms: int
    """Maximum delay between retries in milliseconds (caps exponential backoff)."""

    backoff_multiplier: float
    """Multiplier for exponential backoff. 1.0 gives a fixed delay.

    Each retry delay is calculated as:
    min(initial_delay * backoff_multiplier^(attempt-1), max_delay)
    """

    jitter: JitterStrategy = JitterStrategy.NONE
    """Randomization applied to each computed delay."""

    retryable_categories: frozenset[ErrorCategory] = field(
        default_factory=lambda: frozenset({ErrorCategory.TRANSIENT})
    )
    """Allow list by category. Errors outside it are not retried."""

    retryable_errors: tuple[type[BaseException], ...] = ()
    """Exception types always retried, regardless of category."""

    non_retryable_errors: tuple[type[BaseException], ...] = ()
    """Exception types never retried. Checked before everything else."""

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """
        Create a policy with custom max_attempts (uses standard delays).

        Example:
            policy = RetryPolicy.with_max_attempts(5)
        """
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=1000,
            max_delay_ms=30000,
            backoff_multiplier=2.0,
        )

    @classmethod
    def fixed(
        cls,
        delay: timedelta,
        max_attempts: int = 3,
        retryable_categories: frozenset[ErrorCategory] | None = None,
    ) -> RetryPolicy:
        """Retry with the same delay between every attempt."""
        delay_ms = int(delay.total_seconds() * 1000)
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=delay_ms,
            max_delay_ms=delay_ms,
            backoff_multiplier=1.0,
            retryable_categories=retryable_categories or frozenset({ErrorCategory.TRANSIENT}),
        )

    @classmethod
    def exponential(
        cls,
        max_attempts: int = 3,
        initial_delay: timedelta = timedelta(seconds=1),
        rate: float = 2.0,
        max_delay: timedelta = timedelta(minutes=5),
        jitter: JitterStrategy = JitterStrategy.NONE,
        retryable_categories: frozenset[ErrorCategory] | None = None,
    ) -> RetryPolicy:
        """Retry with exponential backoff, capped at max_delay."""
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=int(initial_delay.total_seconds() * 1000),
            max_delay_ms=int(max_delay.total_seconds() * 1000),
            backoff_multiplier=rate,
            jitter=jitter,
            retryable_categories=retryable_categories or frozenset({ErrorCategory.TRANSIENT}),
        )

    def delay_for_attempt(self, attempt: int, seed: str = "") -> int | None:
        """
        Calculate the delay before the next retry attempt.

        Args:
            attempt: The attempt that just failed (1-indexed)
            seed: Stable string (usually the operation id) for jitter

        Returns:
            Delay in milliseconds before the next retry, or None if no more retries.

        Example:
            policy = RetryPolicy.STANDARD
            delay1 = policy.delay_for_attempt(1)  # Returns 1000 (1s)
            delay2 = policy.delay_for_attempt(2)  # Returns 2000 (2s)
            delay3 = policy.delay_for_attempt(3)  # Returns None (max attempts)
        """
        if attempt >= self.max_attempts:
            return None

        # attempt=1 (first retry): multiplier^0 → initial_delay
        exponent = attempt - 1
        delay_ms = self.initial_delay_ms * (self.backoff_multiplier**exponent)
        delay_ms = min(delay_ms, self.max_delay_ms)

        if self.jitter is not JitterStrategy.NONE and delay_ms > 0:
            rng = random.Random(f"{seed}:{attempt}")
            if self.jitter is JitterStrategy.FULL:
                delay_ms = rng.uniform(0, delay_ms)
            else:
                delay_ms = rng.uniform(delay_ms / 2, delay_ms)

        return int(delay_ms)

    def is_retryable(self, error: BaseException) -> bool:
        """Apply the deny list, allow list and category rules to an error."""
        if isinstance(error, (UnrecoverableError, FatalExecutionError)):
            return False
        if self.non_retryable_errors and isinstance(error, self.non_retryable_errors):
            return False
        if self.retryable_errors and isinstance(error, self.retryable_errors):
            return True
        return classify_error(error) in self.retryable_categories

    def decide(self, error: BaseException, attempt: int, seed: str = "") -> RetryDecision:
        """
        Decide whether a failed attempt should be retried.

        Args:
            error: The exception raised by the attempt
            attempt: The attempt that just failed (1-indexed)
            seed: Stable string used to seed jitter

        Returns:
            RetryDecision with the delay before the next attempt
        """
        if not self.is_retryable(error):
            return RetryDecision.no_retry()

        delay_ms = self.delay_for_attempt(attempt, seed)
        if delay_ms is None:
            return RetryDecision.no_retry()

        return RetryDecision.retry(timedelta(milliseconds=delay_ms))

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier}, "
            f"jitter={self.jitter.value})"
        )


# Initialize predefined policies after class definition
RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=3,
    initial_delay_ms=1000,  # 1 second
    max_delay_ms=30000,  # 30 seconds
    backoff_multiplier=2.0,
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    max_attempts=10,
    initial_delay_ms=100,  # 100 milliseconds
    max_delay_ms=10000,  # 10 seconds
    backoff_multiplier=1.5,
)
