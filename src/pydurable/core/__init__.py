"""
Core types for the pydurable durable execution engine.

This module contains the workflow-facing types:
- DurableContext: durable operation API handed to workflow handlers
- StepContext: restricted context handed to step bodies
- ExecutionState: task-local state of one replay
- StepConfig, CallbackConfig, WaitForConditionConfig, MapConfig,
  ParallelConfig, ChildConfig, CompletionConfig: per-operation options
- BatchResult: outcome of map and parallel
- ReplayAwareLogger: logger that is silent while replaying
"""

from pydurable.core.batch import (
    BatchItem,
    BatchItemStatus,
    BatchResult,
    CompletionReason,
)
from pydurable.core.identity import operation_id
from pydurable.core.logger import ReplayAwareLogger
from pydurable.core.options import (
    CallbackConfig,
    ChildConfig,
    CompletionConfig,
    MapConfig,
    ParallelConfig,
    StepConfig,
    StepSemantics,
    WaitDecision,
    WaitForConditionConfig,
    WaitStrategy,
)
from pydurable.core.state import EXECUTION_STATE, IN_STEP, ExecutionState
from pydurable.core.step_context import StepContext

# Last: context imports the executor operation modules, which import the modules above
from pydurable.core.context import DurableContext

__all__ = [
    "BatchItem",
    "BatchItemStatus",
    "BatchResult",
    "CompletionReason",
    "operation_id",
    "ReplayAwareLogger",
    "CallbackConfig",
    "ChildConfig",
    "CompletionConfig",
    "MapConfig",
    "ParallelConfig",
    "StepConfig",
    "StepSemantics",
    "WaitDecision",
    "WaitForConditionConfig",
    "WaitStrategy",
    "EXECUTION_STATE",
    "IN_STEP",
    "ExecutionState",
    "StepContext",
    "DurableContext",
]
