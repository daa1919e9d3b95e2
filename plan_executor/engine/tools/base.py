from __future__ import annotations

"""Tool invoker protocol and execution data models.

A tool invoker performs the real-world action behind one step. The engine
treats it as opaque: it only reads ``ToolResult.ok`` and, on failure, the
``error_kind`` taxonomy tag.

Invokers receive a stable ``idempotency_token`` per step. The same token is
passed on every retry and on every re-attempt after a crash, so an invoker
fronting a non-idempotent API can deduplicate.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..schemas.domain import ActionSpec, PlanStep, ToolErrorKind


@dataclass(frozen=True)
class ToolContext:
    """Execution context passed to tool invokers.

    Attributes
    ----------
    plan_id / step_id / step_index:
        Identify the step being executed.
    owner_id / organization_id / conversation_id:
        Opaque tenant scoping supplied by the caller at plan creation.
    prior_results:
        Results of the completed steps before this one, in execution order.
    """

    plan_id: str
    step_id: str
    step_index: int
    owner_id: str
    organization_id: str
    conversation_id: Optional[str] = None
    prior_results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ToolResult:
    """Structured tool execution result."""

    ok: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ToolErrorKind] = None
    error: Optional[str] = None
    cost_usd: Optional[float] = None

    @classmethod
    def success(cls, output: Dict[str, Any] | None = None, *, cost_usd: float | None = None) -> "ToolResult":
        return cls(ok=True, output=dict(output or {}), cost_usd=cost_usd)

    @classmethod
    def failure(cls, kind: ToolErrorKind, message: str, *, output: Dict[str, Any] | None = None) -> "ToolResult":
        return cls(ok=False, output=dict(output or {}), error_kind=ToolErrorKind(kind), error=message)


class ToolInvoker(Protocol):
    """Protocol for the component that executes a step's action."""

    async def invoke(
        self,
        action_spec: ActionSpec,
        *,
        idempotency_token: str,
        timeout: float,
        context: ToolContext,
    ) -> ToolResult: ...


class AbortableToolInvoker(ToolInvoker, Protocol):
    """Invoker that can be asked, best-effort, to stop an in-flight call."""

    async def abort(self, idempotency_token: str) -> None: ...


def idempotency_token(step: PlanStep) -> str:
    """Stable per-step token; identical across retries and process restarts."""
    return f"{step.plan_id}:{step.id}"
