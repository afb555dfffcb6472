"""
Engine configuration.

EngineConfig is an immutable value passed explicitly to the orchestrator,
client and worker, never read from module-level state. Configure it with
the with_* builder methods or from the environment:

    $ export PYDURABLE_MAX_EXECUTION_LIFETIME_SECONDS=86400
    $ export PYDURABLE_POLL_INTERVAL_SECONDS=0.5

    config = EngineConfig.from_env()

Tests inject a fake clock:

    clock = FakeClock(datetime(2026, 1, 1, tzinfo=UTC))
    config = EngineConfig().with_clock(clock)
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from pydurable.models.retry import RetryPolicy
from pydurable.serdes import DEFAULT_SERDES, SerDes

Clock = Callable[[], datetime]

MAX_LIFETIME_CEILING = timedelta(days=365)


def system_clock() -> datetime:
    """Current UTC time. The default engine clock."""
    return datetime.now(UTC)


class FakeClock:
    """
    Manually advanced clock for tests and simulations.

    Example:
        clock = FakeClock()
        clock.advance(timedelta(seconds=60))
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | float) -> datetime:
        """Move time forward by a timedelta or a number of seconds."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        self._now = self._now + delta
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def __repr__(self) -> str:
        return f"FakeClock({self._now.isoformat()})"


@dataclass(frozen=True)
class EngineConfig:
    """
    Settings shared by the orchestrator, client and worker.

    Attributes:
        max_execution_lifetime: Total wall-clock budget of one execution
        default_retry_policy: Retry policy for steps without an explicit one
        serdes: Default SerDes for inputs, results and callback payloads
        clock: Time source; all deadlines are computed from it
        poll_interval: Seconds between worker queue polls (and sync-invoke polls)
        timer_interval: Seconds between worker timer scans
        lease_timeout: RUNNING executions older than this are considered stale
        log_during_replay: Emit workflow logger records during replay too
    """

    max_execution_lifetime: timedelta = MAX_LIFETIME_CEILING
    default_retry_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy.STANDARD)
    serdes: SerDes = DEFAULT_SERDES
    clock: Clock = system_clock
    poll_interval: float = 1.0
    timer_interval: float = 1.0
    lease_timeout: timedelta = timedelta(minutes=15)
    log_during_replay: bool = False

    def __post_init__(self):
        if self.max_execution_lifetime <= timedelta(0):
            raise ValueError("max_execution_lifetime must be positive")
        if self.max_execution_lifetime > MAX_LIFETIME_CEILING:
            raise ValueError(
                f"max_execution_lifetime cannot exceed {MAX_LIFETIME_CEILING.days} days"
            )
        if self.poll_interval <= 0 or self.timer_interval <= 0:
            raise ValueError("poll_interval and timer_interval must be positive")

    # =========================================================================
    # Builder methods
    # =========================================================================

    def with_clock(self, clock: Clock) -> EngineConfig:
        return replace(self, clock=clock)

    def with_max_execution_lifetime(self, lifetime: timedelta) -> EngineConfig:
        return replace(self, max_execution_lifetime=lifetime)

    def with_default_retry_policy(self, policy: RetryPolicy) -> EngineConfig:
        return replace(self, default_retry_policy=policy)

    def with_serdes(self, serdes: SerDes) -> EngineConfig:
        return replace(self, serdes=serdes)

    def with_poll_interval(self, interval: float) -> EngineConfig:
        return replace(self, poll_interval=interval)

    def with_timer_interval(self, interval: float) -> EngineConfig:
        return replace(self, timer_interval=interval)

    def with_lease_timeout(self, timeout: timedelta) -> EngineConfig:
        return replace(self, lease_timeout=timeout)

    def with_replay_logging(self, enabled: bool = True) -> EngineConfig:
        return replace(self, log_during_replay=enabled)

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, prefix: str = "PYDURABLE_"
    ) -> EngineConfig:
        """
        Build a config from environment variables.

        Recognized variables (all optional):
            {prefix}MAX_EXECUTION_LIFETIME_SECONDS
            {prefix}POLL_INTERVAL_SECONDS
            {prefix}TIMER_INTERVAL_SECONDS
            {prefix}LEASE_TIMEOUT_SECONDS
            {prefix}LOG_DURING_REPLAY   (1/true/yes)

        Raises:
            ValueError: If a variable is present but malformed
        """
        env = os.environ if environ is None else environ
        config = cls()

        def read_float(name: str) -> float | None:
            raw = env.get(prefix + name)
            if raw is None or raw == "":
                return None
            try:
                return float(raw)
            except ValueError as e:
                raise ValueError(f"{prefix}{name} must be a number, got {raw!r}") from e

        lifetime = read_float("MAX_EXECUTION_LIFETIME_SECONDS")
        if lifetime is not None:
            config = config.with_max_execution_lifetime(timedelta(seconds=lifetime))

        poll = read_float("POLL_INTERVAL_SECONDS")
        if poll is not None:
            config = config.with_poll_interval(poll)

        timer = read_float("TIMER_INTERVAL_SECONDS")
        if timer is not None:
            config = config.with_timer_interval(timer)

        lease = read_float("LEASE_TIMEOUT_SECONDS")
        if lease is not None:
            config = config.with_lease_timeout(timedelta(seconds=lease))

        replay_logging = env.get(prefix + "LOG_DURING_REPLAY")
        if replay_logging is not None:
            config = config.with_replay_logging(replay_logging.strip().lower() in ("1", "true", "yes"))

        return config
