"""Workflow registry.

Maps workflow names to handler functions so a worker (or the client, in
SYNC mode) can re-invoke the right handler on every replay. Executions
record the workflow name and version they were started with.

Usage:
    ```python
    from pydurable import durable_workflow

    @durable_workflow(name="order-fulfillment", version="2")
    async def fulfill(order, ctx):
        ...

    # Or with an explicit registry
    registry = WorkflowRegistry()
    registry.register(fulfill, name="order-fulfillment")
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydurable.models.errors import ValidationError
from pydurable.serdes import SerDes

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Any], Any]


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    A registered workflow handler.

    Attributes:
        name: Name executions are invoked with
        version: Version recorded on new executions
        handler: `handler(payload, ctx)`, sync or async
        serdes: SerDes for the input payload and the result (None: engine default)
    """

    name: str
    version: str
    handler: Handler
    serdes: SerDes | None = None


class WorkflowRegistry:
    """Registry mapping workflow names to their definitions."""

    def __init__(self):
        self._workflows: dict[str, WorkflowDefinition] = {}

    def register(
        self,
        handler: Handler,
        name: str | None = None,
        version: str = "1",
        serdes: SerDes | None = None,
    ) -> WorkflowDefinition:
        """
        Register a handler. The name defaults to the function's __name__.

        Raises:
            ValidationError: A different handler is already registered under the name
        """
        name = name or getattr(handler, "__name__", None)
        if not name:
            raise ValidationError(f"Cannot derive a workflow name for {handler!r}")

        existing = self._workflows.get(name)
        if existing is not None and existing.handler is not handler:
            raise ValidationError(f"Workflow {name!r} is already registered")

        definition = WorkflowDefinition(name=name, version=str(version), handler=handler, serdes=serdes)
        self._workflows[name] = definition
        logger.debug(f"Registered workflow: {name} (version {definition.version})")
        return definition

    def get(self, name: str) -> WorkflowDefinition | None:
        return self._workflows.get(name)

    def resolve(self, workflow: str | Handler | WorkflowDefinition) -> WorkflowDefinition:
        """
        Look up a workflow by name, definition or decorated handler.

        Raises:
            ValidationError: The workflow is not registered
        """
        if isinstance(workflow, WorkflowDefinition):
            return workflow
        if isinstance(workflow, str):
            definition = self._workflows.get(workflow)
        else:
            definition = getattr(workflow, "__durable_workflow__", None)
            if definition is None:
                definition = next(
                    (d for d in self._workflows.values() if d.handler is workflow), None
                )
        if definition is None:
            raise ValidationError(f"Workflow {workflow!r} is not registered")
        return definition

    def names(self) -> list[str]:
        return sorted(self._workflows)

    def __contains__(self, name: str) -> bool:
        return name in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)


default_registry = WorkflowRegistry()
"""Registry used by @durable_workflow when none is given."""


def durable_workflow(
    fn: Handler | None = None,
    *,
    name: str | None = None,
    version: str = "1",
    serdes: SerDes | None = None,
    registry: WorkflowRegistry | None = None,
):
    """
    Register a function as a durable workflow handler.

    Can be used bare (`@durable_workflow`) or with arguments
    (`@durable_workflow(name="billing", version="3")`). The function is
    returned unchanged apart from a `__durable_workflow__` attribute
    holding its WorkflowDefinition.
    """

    def decorator(handler: Handler) -> Handler:
        target = registry if registry is not None else default_registry
        definition = target.register(
            handler, name=name, version=version, serdes=serdes
        )
        handler.__durable_workflow__ = definition
        return handler

    if fn is not None:
        return decorator(fn)
    return decorator
