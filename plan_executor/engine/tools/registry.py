from __future__ import annotations

"""Tool registry and the registry-backed invoker.

The registry maps a logical tool name or an action category to an async
handler. ``RegistryToolInvoker`` resolves ``ActionSpec.tool`` first and falls
back to ``ActionSpec.category``.

Notes:
    - ``register`` overwrites any existing mapping for the key.
    - A spec with no matching handler yields an ``invalid_input`` failure.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from ..errors import ToolInvocationError
from ..schemas.domain import ActionCategory, ActionSpec, ToolErrorKind
from .base import ToolContext, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ToolContext, ActionSpec], Awaitable[ToolResult]]


class ToolRegistry:
    """In-memory mapping of tool names / categories to handlers."""

    def __init__(self) -> None:
        self._by_tool: Dict[str, ToolHandler] = {}
        self._by_category: Dict[ActionCategory, ToolHandler] = {}

    def register_tool(self, name: str, handler: ToolHandler) -> None:
        self._by_tool[name] = handler

    def register_category(self, category: ActionCategory, handler: ToolHandler) -> None:
        self._by_category[ActionCategory(category)] = handler

    def resolve(self, spec: ActionSpec) -> Optional[ToolHandler]:
        """
        Find the handler for a spec.

        Args:
            spec: The action spec of the step being executed.

        Returns:
            The handler, or None if nothing is registered for the spec.
        """
        if spec.tool is not None and spec.tool in self._by_tool:
            return self._by_tool[spec.tool]
        return self._by_category.get(ActionCategory.parse(spec.category))

    def has(self, spec: ActionSpec) -> bool:
        return self.resolve(spec) is not None


class RegistryToolInvoker:
    """``ToolInvoker`` that dispatches to registered handlers.

    Each call runs in its own task keyed by idempotency token so ``abort`` can
    cancel it. A cancelled call reports a ``permanent`` failure.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry
        self._in_flight: Dict[str, asyncio.Task[ToolResult]] = {}
        self._aborted: Set[str] = set()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def invoke(
        self,
        action_spec: ActionSpec,
        *,
        idempotency_token: str,
        timeout: float,
        context: ToolContext,
    ) -> ToolResult:
        handler = self._registry.resolve(action_spec)
        if handler is None:
            return ToolResult.failure(
                ToolErrorKind.invalid_input,
                f"no tool registered for category={action_spec.category!r} tool={action_spec.tool!r}",
            )

        task = asyncio.ensure_future(handler(context, action_spec))
        self._in_flight[idempotency_token] = task
        try:
            return await asyncio.wait_for(task, timeout=timeout)
        except asyncio.CancelledError:
            if idempotency_token in self._aborted:
                return ToolResult.failure(ToolErrorKind.permanent, "tool call aborted")
            raise
        except ToolInvocationError as e:
            return ToolResult.failure(e.kind, e.message)
        finally:
            self._in_flight.pop(idempotency_token, None)
            self._aborted.discard(idempotency_token)

    async def abort(self, idempotency_token: str) -> None:
        task = self._in_flight.get(idempotency_token)
        if task is None or task.done():
            return
        logger.info(f"Aborting in-flight tool call {idempotency_token}")
        self._aborted.add(idempotency_token)
        task.cancel()
