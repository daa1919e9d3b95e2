"""Tool invocation boundary.

The engine never performs a step's side effect itself; it hands the step's
``ActionSpec`` to a ``ToolInvoker`` together with a stable idempotency token,
an execution timeout and a ``ToolContext``.
"""

from .base import AbortableToolInvoker, ToolContext, ToolInvoker, ToolResult, idempotency_token
from .registry import RegistryToolInvoker, ToolHandler, ToolRegistry

__all__ = [
    "AbortableToolInvoker",
    "RegistryToolInvoker",
    "ToolContext",
    "ToolHandler",
    "ToolInvoker",
    "ToolRegistry",
    "ToolResult",
    "idempotency_token",
]
