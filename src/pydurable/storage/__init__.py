"""Storage backends for durable execution state.

Provides multiple storage implementations behind a common interface:
    - ExecutionLog: Abstract interface
    - SqliteExecutionLog: SQLite-backed storage (aiosqlite)
    - RedisExecutionLog: Redis-backed distributed storage (redis.asyncio)
    - InMemoryExecutionLog: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion
    All storage implementations adapt to the ExecutionLog interface.
    Clients depend on the abstraction, so backends are swappable.
"""

from pydurable.storage.base import (
    ExecutionLog,
    LeaseLostError,
    StorageError,
    TimerNotificationSource,
    WorkNotificationSource,
)

# Lazy imports: the SQLite and Redis drivers are only loaded when those
# backends are actually requested.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryExecutionLog":
        from pydurable.storage.memory import InMemoryExecutionLog

        return InMemoryExecutionLog
    elif name == "RedisExecutionLog":
        from pydurable.storage.redis import RedisExecutionLog

        return RedisExecutionLog
    elif name == "SqliteExecutionLog":
        from pydurable.storage.sqlite import SqliteExecutionLog

        return SqliteExecutionLog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ExecutionLog",
    "LeaseLostError",
    "StorageError",
    "WorkNotificationSource",
    "TimerNotificationSource",
    "SqliteExecutionLog",
    "RedisExecutionLog",
    "InMemoryExecutionLog",
]
