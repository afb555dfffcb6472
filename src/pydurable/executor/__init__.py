"""
Executor module - runtime engine for durable workflows.

This module contains the execution components:
- step, wait, callback, condition, child, concurrency: durable operations
- outcome: ReplayOutcome state machine (Completed/Suspended)
- orchestrator: ReplayOrchestrator, one replay of one execution
- client: DurableClient, invocation and callback signals
- worker: Worker, polling, timers and stale lease recovery

The durable operation modules are imported by pydurable.core.context,
which they in turn type-annotate against, so the public classes here
are loaded lazily.
"""

from pydurable.executor.outcome import (
    Completed,
    ReplayOutcome,
    Suspended,
    SuspendReason,
    is_completed,
    is_suspended,
)

_LAZY = {
    "ReplayOrchestrator": "pydurable.executor.orchestrator",
    "DurableClient": "pydurable.executor.client",
    "InvocationMode": "pydurable.executor.client",
    "Worker": "pydurable.executor.worker",
    "WorkerHandle": "pydurable.executor.worker",
    "WorkerError": "pydurable.executor.worker",
}


def __getattr__(name: str):
    """Lazy import executor classes."""
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib

    return getattr(importlib.import_module(module_name), name)


__all__ = [
    "SuspendReason",
    "Completed",
    "Suspended",
    "ReplayOutcome",
    "is_completed",
    "is_suspended",
    "ReplayOrchestrator",
    "DurableClient",
    "InvocationMode",
    "Worker",
    "WorkerHandle",
    "WorkerError",
]
