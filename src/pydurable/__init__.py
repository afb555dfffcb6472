"""
pydurable: Durable Execution Engine for Python

Ordinary sequential async code that survives suspensions lasting up to a
year. The outcome of every durable operation is checkpointed, and the
workflow is deterministically replayed from the top on each resumption.

Design Pattern: Façade Pattern
This module provides a simplified interface to the engine, hiding the
storage, replay and timer coordination behind a few names.

Example:
    ```python
    import asyncio
    from datetime import timedelta
    from pydurable import DurableClient, InMemoryExecutionLog, InvocationMode, durable_workflow

    @durable_workflow(name="greeting")
    async def greeting(name, ctx):
        text = await ctx.step("compose", lambda step_ctx: f"Hello, {name}!")
        await ctx.wait("pause", timedelta(seconds=1))
        return text

    async def main():
        client = DurableClient(InMemoryExecutionLog())
        print(await client.invoke(greeting, "Ada", mode=InvocationMode.SYNC))

    asyncio.run(main())
    ```
"""

# Configuration
from pydurable.config import EngineConfig, FakeClock, system_clock

# Models and errors
from pydurable.models import (
    CallbackStatus,
    CallbackToken,
    ErrorCategory,
    ErrorObject,
    Execution,
    ExecutionStatus,
    JitterStrategy,
    Operation,
    OperationStatus,
    OperationType,
    RetryDecision,
    RetryPolicy,
    classify_error,
)
from pydurable.models.errors import (
    BatchError,
    CallbackError,
    CallbackNotFoundError,
    CallbackTimeoutError,
    DuplicateOperationError,
    DurableError,
    DurableTimeoutError,
    ExecutionConflictError,
    ExecutionNotFoundError,
    ExecutionTimedOutError,
    FatalExecutionError,
    NestedOperationError,
    PermanentError,
    ReplayDivergenceError,
    RetryableError,
    StepError,
    StepInterruptedError,
    TransientError,
    UnrecoverableError,
    UnrecoverableExecutionError,
    ValidationError,
    WaitForConditionTimeoutError,
)

# Serialization
from pydurable.serdes import DEFAULT_SERDES, JsonSerDes, PickleSerDes, SerDes, SerDesError

# Storage (Adapter pattern)
from pydurable.storage import ExecutionLog, InMemoryExecutionLog, LeaseLostError, StorageError

# Workflow-facing API
from pydurable.core import (
    BatchItem,
    BatchItemStatus,
    BatchResult,
    CallbackConfig,
    ChildConfig,
    CompletionConfig,
    CompletionReason,
    DurableContext,
    MapConfig,
    ParallelConfig,
    StepConfig,
    StepContext,
    StepSemantics,
    WaitDecision,
    WaitForConditionConfig,
    WaitStrategy,
)
from pydurable.registry import WorkflowDefinition, WorkflowRegistry, default_registry, durable_workflow

# Execution
from pydurable.executor.outcome import (
    Completed,
    ReplayOutcome,
    Suspended,
    SuspendReason,
    is_completed,
    is_suspended,
)
from pydurable.executor.orchestrator import ReplayOrchestrator
from pydurable.executor.client import DurableClient, InvocationMode
from pydurable.executor.worker import Worker, WorkerError, WorkerHandle


def __getattr__(name: str):
    """Lazy import of the backends that need optional drivers."""
    if name in ("SqliteExecutionLog", "RedisExecutionLog"):
        import pydurable.storage

        return getattr(pydurable.storage, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


# Version
__version__ = "0.1.0"

__all__ = [
    # Configuration
    "EngineConfig",
    "FakeClock",
    "system_clock",
    # Models
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
    "classify_error",
    # Errors
    "BatchError",
    "CallbackError",
    "CallbackNotFoundError",
    "CallbackTimeoutError",
    "DuplicateOperationError",
    "DurableError",
    "DurableTimeoutError",
    "ExecutionConflictError",
    "ExecutionNotFoundError",
    "ExecutionTimedOutError",
    "FatalExecutionError",
    "NestedOperationError",
    "PermanentError",
    "ReplayDivergenceError",
    "RetryableError",
    "StepError",
    "StepInterruptedError",
    "TransientError",
    "UnrecoverableError",
    "UnrecoverableExecutionError",
    "ValidationError",
    "WaitForConditionTimeoutError",
    # Serialization
    "DEFAULT_SERDES",
    "JsonSerDes",
    "PickleSerDes",
    "SerDes",
    "SerDesError",
    # Storage
    "ExecutionLog",
    "InMemoryExecutionLog",
    "SqliteExecutionLog",
    "RedisExecutionLog",
    "LeaseLostError",
    "StorageError",
    # Workflow API
    "BatchItem",
    "BatchItemStatus",
    "BatchResult",
    "CallbackConfig",
    "ChildConfig",
    "CompletionConfig",
    "CompletionReason",
    "DurableContext",
    "MapConfig",
    "ParallelConfig",
    "StepConfig",
    "StepContext",
    "StepSemantics",
    "WaitDecision",
    "WaitForConditionConfig",
    "WaitStrategy",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "default_registry",
    "durable_workflow",
    # Execution
    "Completed",
    "ReplayOutcome",
    "Suspended",
    "SuspendReason",
    "is_completed",
    "is_suspended",
    "ReplayOrchestrator",
    "DurableClient",
    "InvocationMode",
    "Worker",
    "WorkerError",
    "WorkerHandle",
    # Metadata
    "__version__",
]
