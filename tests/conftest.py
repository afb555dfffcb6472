"""
Pytest configuration and fixtures for pydurable tests.

Provides storage backends, a fake clock, an isolated workflow registry and
an Engine harness that drives replays the way a worker would, but one step
at a time and under test control.
"""

import os
import shutil
import tempfile
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import pytest

from pydurable import (
    DurableClient,
    EngineConfig,
    Execution,
    FakeClock,
    ReplayOrchestrator,
    RetryPolicy,
    WorkflowRegistry,
)
from pydurable.storage.base import ExecutionLog
from pydurable.storage.memory import InMemoryExecutionLog
from pydurable.storage.redis import RedisExecutionLog
from pydurable.storage.sqlite import SqliteExecutionLog


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    # In CI environments only, force exit to prevent hanging
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


@pytest.fixture
async def in_memory_storage() -> AsyncGenerator[InMemoryExecutionLog, None]:
    """Async in-memory storage fixture with automatic cleanup."""
    storage = InMemoryExecutionLog()
    yield storage
    await storage.reset()


@pytest.fixture
async def sqlite_memory_storage() -> AsyncGenerator[SqliteExecutionLog, None]:
    """Async SQLite in-memory storage fixture with automatic cleanup."""
    storage = SqliteExecutionLog(":memory:")
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_storage(temp_db_path: Path) -> AsyncGenerator[SqliteExecutionLog, None]:
    """Async SQLite file-based storage fixture with automatic cleanup."""
    storage = SqliteExecutionLog(str(temp_db_path))
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture(params=["memory", "sqlite", "redis"])
async def storage(request) -> AsyncGenerator[ExecutionLog, None]:
    """Every storage backend. Redis runs only when PYDURABLE_TEST_REDIS_URL is set."""
    if request.param == "memory":
        backend = InMemoryExecutionLog()
    elif request.param == "sqlite":
        backend = SqliteExecutionLog(":memory:")
        await backend.connect()
    else:
        redis_url = os.getenv("PYDURABLE_TEST_REDIS_URL")
        if not redis_url:
            pytest.skip("PYDURABLE_TEST_REDIS_URL not set")
        backend = RedisExecutionLog(redis_url)
        await backend.connect()
        await backend.reset()
    yield backend
    await backend.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> WorkflowRegistry:
    """Fresh registry, so tests never share workflow names."""
    return WorkflowRegistry()


# =============================================================================
# Engine harness
# =============================================================================


@dataclass
class Engine:
    """
    Client plus orchestrator over one storage, driven manually.

    replay() runs one replay, settle() replays until the execution is
    terminal or blocked on time or a signal, advance() moves the fake clock
    and wakes due timers the way a worker's timer loop does.
    """

    storage: ExecutionLog
    registry: WorkflowRegistry
    clock: FakeClock
    config: EngineConfig
    client: DurableClient = field(init=False)
    orchestrator: ReplayOrchestrator = field(init=False)

    def __post_init__(self):
        self.client = DurableClient(self.storage, self.registry, self.config)
        self.orchestrator = ReplayOrchestrator(self.storage, self.registry, self.config, "test-worker")

    def workflow(self, name: str | None = None, **kwargs):
        """Decorator registering a handler in this engine's registry."""

        def decorator(handler):
            self.registry.register(handler, name=name, **kwargs)
            return handler

        return decorator

    async def start(self, workflow, payload=None, execution_name: str | None = None) -> str:
        execution = await self.client.invoke(workflow, payload, execution_name=execution_name)
        return execution.execution_id

    async def replay(self, execution_id: str):
        return await self.orchestrator.run(execution_id)

    async def settle(self, execution_id: str, max_replays: int = 50) -> Execution:
        for _ in range(max_replays):
            if await self.replay(execution_id) is None:
                break
        return await self.storage.get_execution(execution_id)

    async def advance(self, seconds: float) -> list[str]:
        """Advance the clock and resume every execution whose timer is due."""
        now = self.clock.advance(seconds)
        resumed = []
        for timer in await self.storage.get_expired_timers(now):
            if await self.storage.resume_execution(timer.execution_id, now):
                resumed.append(timer.execution_id)
        return resumed

    async def run_to_end(self, execution_id: str, step_seconds: float = 60, limit: int = 200) -> Execution:
        """Alternate settle() and advance() until the execution is terminal."""
        execution = await self.settle(execution_id)
        for _ in range(limit):
            if execution.is_terminal:
                return execution
            await self.advance(step_seconds)
            execution = await self.settle(execution_id)
        return execution

    async def history(self, execution_id: str):
        return await self.client.get_execution_history(execution_id)

    async def operation(self, execution_id: str, name: str, parent_id: str | None = None):
        for op in await self.storage.get_operations(execution_id):
            if op.name == name and (parent_id is None or op.parent_id == parent_id):
                return op
        return None


@pytest.fixture
def engine_config(clock: FakeClock) -> EngineConfig:
    return (
        EngineConfig()
        .with_clock(clock)
        .with_default_retry_policy(RetryPolicy.fixed(timedelta(seconds=1), max_attempts=3))
        .with_poll_interval(0.01)
    )


@pytest.fixture
def engine(storage, registry, clock, engine_config) -> Engine:
    """Engine over every storage backend."""
    return Engine(storage=storage, registry=registry, clock=clock, config=engine_config)


@pytest.fixture
def memory_engine(in_memory_storage, registry, clock, engine_config) -> Engine:
    """Engine over in-memory storage only, for tests that poke at internals."""
    return Engine(storage=in_memory_storage, registry=registry, clock=clock, config=engine_config)


@pytest.fixture
def engine_factory(storage, registry, clock, engine_config):
    """Build an Engine over every storage backend with an adjusted config."""

    def build(config: EngineConfig | None = None) -> Engine:
        return Engine(storage=storage, registry=registry, clock=clock, config=config or engine_config)

    return build
