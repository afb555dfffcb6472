"""Worker for polling and replaying executions.

Workers claim PENDING executions from storage, replay them in background
tasks, resume SUSPENDED executions whose wake-up time has passed, and
recover executions whose replay lease went stale. Supports graceful
shutdown and a configurable concurrency limit.

Features:
- Event-driven work polling with fallback
- Non-blocking replays
- Timer processing (optional)
- Stale lease recovery
- Graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from pydurable.config import EngineConfig
from pydurable.executor.orchestrator import ReplayOrchestrator
from pydurable.executor.outcome import Completed, Suspended
from pydurable.models import Execution
from pydurable.registry import WorkflowRegistry, default_registry
from pydurable.storage.base import (
    ExecutionLog,
    LeaseLostError,
    TimerNotificationSource,
    WorkNotificationSource,
)

logger = logging.getLogger(__name__)

# Upper bound between stale-lease sweeps
_MAX_RECOVERY_INTERVAL = 60.0


class Worker:
    """Worker that polls storage and replays executions.

    Design Patterns:
    - Template Method: _run() defines fixed algorithm skeleton
    - Builder: with_timers(), with_poll_interval() for configuration

    Usage:
        storage = SqliteExecutionLog("durable.db")
        await storage.connect()

        worker = Worker(storage, registry, "worker-1") \\
            .with_timers() \\
            .with_poll_interval(1.0)

        handle = await worker.start()

        # ... let it run ...

        await handle.shutdown()
    """

    def __init__(
        self,
        storage: ExecutionLog,
        registry: WorkflowRegistry | None = None,
        worker_id: str = "worker",
        config: EngineConfig | None = None,
    ):
        """Initialize worker with storage backend.

        Args:
            storage: Storage backend for persistence
            registry: Workflows this worker can replay (default: the global registry)
            worker_id: Unique worker identifier, recorded as the lease holder
            config: Engine configuration (clock, lifetime, intervals)
        """
        self._storage = storage
        self._registry = registry if registry is not None else default_registry
        self._worker_id = worker_id
        self._config = config or EngineConfig()
        self._orchestrator = ReplayOrchestrator(storage, self._registry, self._config, worker_id)

        self._enable_timers = False
        self._timer_interval = self._config.timer_interval
        self.with_poll_interval(self._config.poll_interval)

        self._shutdown_event = asyncio.Event()
        self._running = False

        # Save a reference so replay tasks are not garbage collected mid-execution
        self._background_tasks: set[asyncio.Task] = set()

        # Backpressure: optional limit on concurrent replays
        self._max_concurrent_executions: asyncio.Semaphore | None = None

        # Dequeue channel (bounded to 1): the main loop must consume before the next dequeue.
        # Carries (execution, permit); the permit is held until the replay finishes
        self._dequeue_queue: asyncio.Queue[tuple[Execution, bool]] = asyncio.Queue(maxsize=1)
        self._dequeue_task: asyncio.Task | None = None

        self._supports_work_notifications = isinstance(storage, WorkNotificationSource)
        self._supports_timer_notifications = isinstance(storage, TimerNotificationSource)

        if self._supports_work_notifications:
            self._work_notify = storage.work_notify()
            logger.debug(f"Worker {worker_id}: Event-driven work notifications enabled")
        else:
            self._work_notify = None
            logger.debug(f"Worker {worker_id}: Polling-based work detection (no notifications)")

        if self._supports_timer_notifications:
            self._timer_notify = storage.timer_notify()
            logger.debug(f"Worker {worker_id}: Event-driven timer notifications enabled")
        else:
            self._timer_notify = None
            logger.debug(f"Worker {worker_id}: Polling-based timer detection (no notifications)")

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def with_timers(self) -> Worker:
        """Enable timer processing (builder pattern).

        When enabled, the worker resumes SUSPENDED executions whose
        wake-up time has passed: fired waits, due retries, polled
        conditions and expired callback deadlines.

        Example:
            worker = Worker(storage, registry, "worker-1").with_timers()
        """
        self._enable_timers = True
        return self

    def with_timer_interval(self, interval: float) -> Worker:
        """Set the maximum sleep between timer checks (builder pattern).

        The worker sleeps until the next known wake-up time, but never
        longer than this. Bounding the sleep matters when the engine
        clock is not the wall clock.
        """
        self._timer_interval = interval
        return self

    def with_poll_interval(self, interval: float) -> Worker:
        """Configure polling interval (builder pattern).

        Args:
            interval: Seconds between queue polls when no work notification arrives
        """
        self._poll_interval = interval
        # Jitter the poll interval per worker to avoid a thundering herd
        worker_hash = sum(ord(c) for c in self._worker_id)
        jitter_ms = 1 + (worker_hash % 5)
        self._poll_interval_with_jitter = interval + (jitter_ms / 1000.0)
        return self

    def with_max_concurrent_executions(self, max_concurrent: int) -> Worker:
        """Limit the number of replays running at once.

        The semaphore permit is acquired BEFORE querying storage, so a
        worker at capacity does not even try to claim more executions.

        Example:
            worker = Worker(storage, registry, "worker-1").with_max_concurrent_executions(100)
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent_executions = asyncio.Semaphore(max_concurrent)
        return self

    async def start(self) -> WorkerHandle:
        """Start the worker main loop.

        Returns WorkerHandle immediately, letting caller decide
        whether to await or run concurrently.
        """
        if self._running:
            raise WorkerError(f"Worker {self._worker_id} is already running")
        self._running = True
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def _background_dequeue_loop(self) -> None:
        """Continuously claim executions and hand them to the main loop.

        Backpressure strategy:
        1. Acquire semaphore permit BEFORE the storage query (if limit configured)
        2. Claim the oldest PENDING execution
        3. Send (execution, permit) to the main loop
        4. The replay task releases the permit when it finishes
        """
        while self._running and not self._shutdown_event.is_set():
            permit = False
            try:
                if self._max_concurrent_executions is not None:
                    await self._max_concurrent_executions.acquire()
                    permit = True

                execution = await self._storage.dequeue_execution(
                    self._worker_id, self._config.clock()
                )

                if execution is not None:
                    await self._dequeue_queue.put((execution, permit))
                    permit = False  # Ownership moved to the replay task
                else:
                    self._release(permit)
                    permit = False

                    if self._supports_work_notifications:
                        try:
                            await asyncio.wait_for(
                                self._work_notify.wait(),
                                timeout=self._poll_interval_with_jitter,
                            )
                            self._work_notify.clear()
                        except TimeoutError:
                            pass
                    else:
                        await asyncio.sleep(self._poll_interval_with_jitter)

            except Exception as e:
                self._release(permit)
                logger.error(f"Worker {self._worker_id}: Background dequeue error: {e}")
                await asyncio.sleep(0.1)

    def _release(self, permit: bool) -> None:
        if permit and self._max_concurrent_executions is not None:
            self._max_concurrent_executions.release()

    async def _run(self) -> None:
        """Main worker loop using asyncio.wait with FIRST_COMPLETED.

        Concurrently waits on multiple event sources:
        1. Claimed executions (from the background dequeue task)
        2. Timer sleep (until the next wake-up time)
        3. Timer notification (wakes when an execution suspends with a wake-up time)
        4. Stale lease recovery (periodic)

        Whichever completes first is handled, then the loop repeats.
        """
        logger.info(f"Worker {self._worker_id} started")

        self._dequeue_task = asyncio.create_task(self._background_dequeue_loop())

        next_timer_wake: datetime | None = None
        if self._enable_timers:
            next_timer_wake = await self._calculate_next_timer_wake()
        recovery_interval = min(
            self._config.lease_timeout.total_seconds() / 2, _MAX_RECOVERY_INTERVAL
        )

        # Outlives loop iterations so frequent timer wake-ups cannot starve it
        recovery_sleep = asyncio.create_task(asyncio.sleep(recovery_interval))

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    if recovery_sleep.done():
                        recovery_sleep = asyncio.create_task(asyncio.sleep(recovery_interval))
                    pending_tasks = {
                        "shutdown": asyncio.create_task(self._shutdown_event.wait()),
                        "dequeue": asyncio.create_task(self._dequeue_queue.get()),
                        "stale_leases": recovery_sleep,
                    }

                    if self._enable_timers:
                        pending_tasks["timer_sleep"] = asyncio.create_task(
                            self._create_timer_sleep(next_timer_wake)
                        )
                        if self._supports_timer_notifications:
                            pending_tasks["timer_notify"] = asyncio.create_task(
                                self._timer_notify.wait()
                            )

                    done, pending = await asyncio.wait(
                        pending_tasks.values(),
                        return_when=asyncio.FIRST_COMPLETED,
                    )

                    for task in pending:
                        if task is recovery_sleep:
                            continue
                        task.cancel()
                        try:
                            await task
                        except asyncio.CancelledError:
                            pass

                    for task_name, task in pending_tasks.items():
                        if task not in done:
                            continue

                        try:
                            result = task.result()
                        except Exception as task_error:
                            logger.error(
                                f"Worker {self._worker_id}: Task '{task_name}' failed: {task_error}"
                            )
                            continue

                        if task_name == "shutdown":
                            logger.debug(f"Worker {self._worker_id}: Shutdown signal received")
                            break

                        elif task_name == "dequeue":
                            execution, permit = result
                            self._dequeue_queue.task_done()

                            replay = asyncio.create_task(self._execute(execution, permit))
                            self._background_tasks.add(replay)
                            replay.add_done_callback(self._background_tasks.discard)

                            logger.debug(
                                f"Worker {self._worker_id} claimed execution "
                                f"{execution.execution_id}"
                            )

                        elif task_name == "stale_leases":
                            await self._recover_stale_leases()

                        elif task_name == "timer_sleep":
                            await self._process_timers()
                            next_timer_wake = await self._calculate_next_timer_wake()

                        elif task_name == "timer_notify":
                            self._timer_notify.clear()
                            next_timer_wake = await self._calculate_next_timer_wake()
                            logger.debug(f"Worker {self._worker_id}: Timer notification received")

                except Exception as e:
                    logger.error(f"Worker {self._worker_id} error: {e}")

            logger.info(
                f"Worker {self._worker_id}: Exiting main loop "
                f"(running={self._running}, shutdown={self._shutdown_event.is_set()})"
            )
        finally:
            recovery_sleep.cancel()
            logger.info(f"Worker {self._worker_id} stopped")

    async def _create_timer_sleep(self, next_timer_wake: datetime | None) -> None:
        """Sleep until the next wake-up time, capped at the timer interval."""
        if next_timer_wake is None:
            await asyncio.sleep(self._timer_interval)
            return
        remaining = (next_timer_wake - self._config.clock()).total_seconds()
        if remaining <= 0:
            return
        await asyncio.sleep(min(remaining, self._timer_interval))

    async def _calculate_next_timer_wake(self) -> datetime | None:
        try:
            return await self._storage.get_next_timer_fire_time()
        except Exception as e:
            logger.warning(f"Worker {self._worker_id}: Failed to get next timer: {e}")
            return None

    async def _process_timers(self) -> None:
        """Resume SUSPENDED executions whose wake-up time has passed.

        The replay decides what the wake-up meant (a fired wait, a due
        retry, an expired callback); the worker only makes it runnable.
        """
        now = self._config.clock()

        try:
            expired = await self._storage.get_expired_timers(now)

            if expired:
                logger.debug(f"Worker {self._worker_id}: Processing {len(expired)} expired timers")

            for timer_info in expired:
                try:
                    resumed = await self._storage.resume_execution(timer_info.execution_id, now)
                    if resumed:
                        logger.info(
                            f"Timer fired: execution={timer_info.execution_id} "
                            f"fire_at={timer_info.fire_at.isoformat()}"
                        )
                    else:
                        logger.debug(
                            f"Execution {timer_info.execution_id} not SUSPENDED after timer "
                            "(already resumed by another worker)"
                        )
                except Exception as e:
                    logger.warning(
                        f"Failed to resume execution after timer: "
                        f"execution={timer_info.execution_id} error={e}"
                    )

        except Exception as e:
            logger.error(f"Worker {self._worker_id}: Timer processing error: {e}")

    async def _recover_stale_leases(self) -> None:
        now = self._config.clock()
        try:
            count = await self._storage.recover_stale_executions(
                now - self._config.lease_timeout, now
            )
            if count > 0:
                logger.info(f"Worker {self._worker_id} recovered {count} stale leases")
        except Exception as e:
            logger.warning(f"Worker {self._worker_id} failed to recover stale leases: {e}")

    async def _execute(self, execution: Execution, permit: bool = False) -> None:
        """Replay a claimed execution; the permit is released when it finishes."""
        try:
            outcome = await self._orchestrator.replay(execution)

            if isinstance(outcome, Suspended):
                logger.debug(f"Worker {self._worker_id}: {outcome}")
            elif isinstance(outcome, Completed):
                logger.debug(
                    f"Worker {self._worker_id}: execution {execution.execution_id} {outcome.status}"
                )

        except LeaseLostError as e:
            # Another replay owns the execution now; this one's writes were rejected
            logger.warning(f"Worker {self._worker_id} abandoned replay: {e}")
        except Exception as e:
            # The lease stays in place; stale lease recovery re-queues the execution
            logger.error(
                f"Worker {self._worker_id} unexpected error: "
                f"execution={execution.execution_id}, error={e}"
            )
        finally:
            self._release(permit)

    async def shutdown(self) -> None:
        """Gracefully shutdown the worker.

        Waits for all in-flight replays to finish.
        """
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self._dequeue_task and not self._dequeue_task.done():
            self._dequeue_task.cancel()
            try:
                await self._dequeue_task
            except asyncio.CancelledError:
                pass

        # An execution claimed but never handed to a replay task goes back via lease recovery
        while not self._dequeue_queue.empty():
            execution, permit = self._dequeue_queue.get_nowait()
            self._release(permit)
            logger.warning(
                f"Worker {self._worker_id}: execution {execution.execution_id} claimed but not "
                "replayed before shutdown"
            )

        if self._background_tasks:
            logger.info(
                f"Worker {self._worker_id}: Waiting for {len(self._background_tasks)} "
                "replays to complete..."
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
            logger.info(f"Worker {self._worker_id}: All replays completed")


class WorkerHandle:
    """Handle for controlling a running worker.

    Composition - handle HAS-A worker, not IS-A worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        """Return True if the worker task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for completion."""
        await self._worker.shutdown()
        await self._task

        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Abort the worker immediately without waiting for completion.

        Note: This bypasses graceful shutdown. Executions whose replay was
        cut short keep their lease until stale lease recovery re-queues them.
        """
        self._task.cancel()


class WorkerError(Exception):
    """Worker operation failed."""

    pass
