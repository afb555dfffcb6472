"""Core data models for durable execution.

Defines types for execution and operation state tracking, callback
tokens, retry behavior and the error taxonomy.

Design: Dependency-Free Models
These types have no dependencies on core, storage or executor modules to
prevent circular imports and enable clean layering.
"""

from pydurable.models.callback import CallbackToken
from pydurable.models.errors import ErrorCategory, ErrorObject, classify_error
from pydurable.models.execution import Execution
from pydurable.models.operation import Operation
from pydurable.models.retry import JitterStrategy, RetryDecision, RetryPolicy
from pydurable.models.status import (
    CallbackStatus,
    ExecutionStatus,
    OperationStatus,
    OperationType,
)
from pydurable.models.timer_info import TimerInfo

__all__ = [
    "CallbackStatus",
    "CallbackToken",
    "ErrorCategory",
    "ErrorObject",
    "Execution",
    "ExecutionStatus",
    "JitterStrategy",
    "Operation",
    "OperationStatus",
    "OperationType",
    "RetryDecision",
    "RetryPolicy",
    "TimerInfo",
    "classify_error",
]
