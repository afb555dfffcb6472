"""
Error taxonomy for durable executions.

Design: Errors Are Values
Every failure the engine can surface has its own type, so workflow code
can branch on it (saga compensation, escalation on timeout) and so the
engine can decide what is retried, what is cached, and what is fatal.

Categories:
- Transient: retryable per policy (network errors, throttling)
- Permanent: application-defined business failures, not retried
- Unrecoverable: bypass retry and fail immediately
- Timeout: wait/callback deadline exceeded, catchable
- Fatal: replay divergence and API misuse, abort the execution

ErrorObject is the checkpointed form of an exception. It keeps the
pickled original when possible so replay re-raises the same type.
"""

from __future__ import annotations

import pickle
from dataclasses import dataclass
from enum import Enum


class ErrorCategory(Enum):
    """Retry-relevant classification of an error."""

    CLIENT = "CLIENT"
    """Caller mistake (bad input, wrong type); retrying will not help."""

    TRANSIENT = "TRANSIENT"
    """Temporary condition; retrying may succeed."""

    PERMANENT = "PERMANENT"
    """Deterministic business failure; retrying gives the same answer."""

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Base
# =============================================================================


class DurableError(Exception):
    """Base class for all errors raised by pydurable."""

    category: ErrorCategory = ErrorCategory.TRANSIENT


class ValidationError(DurableError):
    """Invalid arguments passed to a durable operation or the client."""

    category = ErrorCategory.CLIENT


# =============================================================================
# Application error categories
# =============================================================================


class RetryableError(Exception):
    """
    Base class for errors that decide for themselves whether to retry.

    Example:
        class PaymentError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable
    """

    def is_retryable(self) -> bool:
        """Return True if the error is transient and the step should retry."""
        return True


class TransientError(DurableError):
    """Temporary failure, retried according to the step's retry policy."""

    category = ErrorCategory.TRANSIENT


class PermanentError(DurableError):
    """Business failure. Never retried by default; surfaced to workflow code."""

    category = ErrorCategory.PERMANENT


class UnrecoverableError(DurableError):
    """Bypasses the retry policy and fails the operation immediately."""

    category = ErrorCategory.PERMANENT


class UnrecoverableExecutionError(UnrecoverableError):
    """Fails the operation and the whole execution, even if workflow code catches it."""


class StepError(DurableError):
    """
    Error rebuilt from a checkpoint whose original exception type could not
    be restored (not picklable, or the class no longer importable).
    """

    category = ErrorCategory.PERMANENT

    def __init__(self, error_type: str, message: str):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.message = message

    def __reduce__(self):
        return (StepError, (self.error_type, self.message))


class StepInterruptedError(TransientError):
    """A step attempt started but the process died before its outcome was checkpointed."""

    def __init__(self, name: str, attempt: int):
        super().__init__(f"Step {name!r} attempt {attempt} was interrupted before checkpointing")
        self.name = name
        self.attempt = attempt

    def __reduce__(self):
        return (StepInterruptedError, (self.name, self.attempt))


class CallbackError(DurableError):
    """An external system reported failure for a callback."""

    category = ErrorCategory.PERMANENT

    def __init__(self, error_type: str, message: str, data: bytes | None = None):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.message = message
        self.data = data

    def __reduce__(self):
        return (CallbackError, (self.error_type, self.message, self.data))


class DurableTimeoutError(DurableError):
    """A wait or callback deadline elapsed. Catchable, not a crash."""

    category = ErrorCategory.PERMANENT


class CallbackTimeoutError(DurableTimeoutError):
    """No callback success/failure (or no heartbeat) arrived before the deadline."""

    def __init__(self, name: str, reason: str = "timeout"):
        super().__init__(f"Callback {name!r} timed out ({reason})")
        self.name = name
        self.reason = reason

    def __reduce__(self):
        return (CallbackTimeoutError, (self.name, self.reason))


class WaitForConditionTimeoutError(DurableTimeoutError):
    """A polled condition did not settle within the strategy's max attempts."""

    def __init__(self, name: str, attempts: int):
        super().__init__(f"Condition {name!r} not met after {attempts} attempts")
        self.name = name
        self.attempts = attempts

    def __reduce__(self):
        return (WaitForConditionTimeoutError, (self.name, self.attempts))


class BatchError(DurableError):
    """A map/parallel operation did not satisfy its completion policy."""

    category = ErrorCategory.PERMANENT

    def __init__(self, message: str, errors: list[BaseException] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def __reduce__(self):
        return (BatchError, (str(self), self.errors))


# =============================================================================
# Fatal errors - indicate a determinism or configuration bug
# =============================================================================


class FatalExecutionError(DurableError):
    """
    Aborts the execution. Never retried.

    Fatal errors fail the execution even when workflow code catches them,
    because they indicate the replay can no longer be trusted.
    """

    category = ErrorCategory.CLIENT


class ReplayDivergenceError(FatalExecutionError):
    """The workflow issued a different operation than the log recorded under that name."""


class DuplicateOperationError(FatalExecutionError):
    """Two operations in one context used the same name during a single replay."""


class NestedOperationError(FatalExecutionError):
    """A durable operation was called from inside a step body."""


# =============================================================================
# Client-facing errors
# =============================================================================


class ExecutionNotFoundError(DurableError):
    """No execution exists with the given id."""

    category = ErrorCategory.CLIENT


class ExecutionConflictError(DurableError):
    """An execution name was reused with a different workflow or payload."""

    category = ErrorCategory.CLIENT


class ExecutionTimedOutError(DurableTimeoutError):
    """The execution exceeded its maximum lifetime."""


class CallbackNotFoundError(DurableError):
    """No callback token exists with the given id."""

    category = ErrorCategory.CLIENT


# =============================================================================
# Classification
# =============================================================================

_CLIENT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
    LookupError,
    NotImplementedError,
)


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Map an exception to its retry category.

    Order matters:
    1. Engine errors carry their own category
    2. RetryableError asks the error itself
    3. Builtin programming errors are CLIENT errors
    4. Everything else is TRANSIENT (safe default: retried per policy)
    """
    if isinstance(error, DurableError):
        return error.category

    if isinstance(error, RetryableError):
        return ErrorCategory.TRANSIENT if error.is_retryable() else ErrorCategory.PERMANENT

    if isinstance(error, _CLIENT_ERROR_TYPES):
        return ErrorCategory.CLIENT

    return ErrorCategory.TRANSIENT


# =============================================================================
# ErrorObject - checkpointed error
# =============================================================================


@dataclass(frozen=True)
class ErrorObject:
    """
    Serialized error stored on a failed operation or execution.

    Attributes:
        error_type: Qualified class name of the original exception
        message: str(exception)
        data: Pickled exception if it could be pickled, None otherwise
        category: Retry category at the time of failure
    """

    error_type: str
    message: str
    data: bytes | None = None
    category: ErrorCategory = ErrorCategory.PERMANENT

    @classmethod
    def from_exception(cls, error: BaseException) -> ErrorObject:
        """Capture an exception, keeping the original object when picklable."""
        error_type = f"{type(error).__module__}.{type(error).__qualname__}"
        try:
            data = pickle.dumps(error)
            # An exception that pickles but cannot be rebuilt is as good as none
            pickle.loads(data)
        except Exception:
            data = None
        return cls(
            error_type=error_type,
            message=str(error),
            data=data,
            category=classify_error(error),
        )

    @classmethod
    def from_signal(cls, error_type: str, message: str, data: bytes | None = None) -> ErrorObject:
        """Build the error for a callback failure reported by an external system."""
        exc = CallbackError(error_type, message, data)
        return cls(
            error_type=error_type,
            message=message,
            data=pickle.dumps(exc),
            category=ErrorCategory.PERMANENT,
        )

    def to_exception(self) -> BaseException:
        """Rebuild the original exception, or a StepError if it cannot be restored."""
        if self.data:
            try:
                error = pickle.loads(self.data)
                if isinstance(error, BaseException):
                    return error
            except Exception:
                pass
        short_type = self.error_type.rsplit(".", 1)[-1]
        return StepError(short_type, self.message)

    def __str__(self) -> str:
        return f"{self.error_type}: {self.message}"
