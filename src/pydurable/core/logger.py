"""Replay-safe logger for workflow code.

Workflow code re-runs from the top on every replay, so a plain logger
would repeat every message once per resumption. ReplayAwareLogger drops
records while the replay is still walking operations recorded by earlier
replays, and tags each record with the execution id.

Usage:
    ```python
    async def workflow(order, ctx):
        ctx.logger.info("charging %s", order["id"])   # logged once
        await ctx.step("charge", charge)
    ```
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pydurable.core.state import ExecutionState

WORKFLOW_LOGGER_NAME = "pydurable.workflow"


class ReplayAwareLogger(logging.LoggerAdapter):
    """LoggerAdapter that is silent while the replay is catching up."""

    def __init__(
        self,
        state: ExecutionState,
        operation_name: str | None = None,
        logger: logging.Logger | None = None,
        suppress_during_replay: bool = True,
    ):
        extra = {"execution_id": state.execution_id}
        if operation_name is not None:
            extra["operation_name"] = operation_name
        super().__init__(logger or logging.getLogger(WORKFLOW_LOGGER_NAME), extra)
        self._state = state
        self._suppress = suppress_during_replay and not state.config.log_during_replay

    def isEnabledFor(self, level: int) -> bool:  # noqa: N802
        if self._suppress and self._state.is_replaying:
            return False
        return super().isEnabledFor(level)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return f"[{self.extra['execution_id']}] {msg}", kwargs
