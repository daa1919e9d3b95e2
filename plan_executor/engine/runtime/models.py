from __future__ import annotations

"""Runtime dependency bundle, retry policy and LangGraph state types.

- ``RetryPolicy`` holds the configurable retry/backoff/timeout values.
- ``RunnerDeps`` collects the repositories and collaborators the runners need.
- ``StepOutcome`` is what the Step Runner reports back to the drive loop.
- ``_DriveState`` is the state passed between LangGraph nodes. It carries only
  the plan id and the last outcome; plan state is always re-read from the store.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, NotRequired, Optional, Required, TypedDict

from pydantic import Field

from ..approval import ApprovalGate
from ..repos import PlanEventRepository, PlanLockManager, PlanStore
from ..schemas.base import BaseSchema
from ..schemas.domain import Plan
from ..tools import ToolInvoker


class RetryPolicy(BaseSchema):
    """
    Retry and timeout configuration for step execution.

    A step whose tool keeps failing transiently is attempted exactly
    ``max_retries + 1`` times. Waits between attempts grow exponentially:
    ``base * factor ** (retry - 1)`` capped at ``max_backoff_seconds``.
    """

    max_retries: int = Field(default=3, ge=0, le=100)
    step_timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)
    backoff_base_seconds: float = Field(default=0.5, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=30.0, ge=0.0)

    def backoff_for(self, retry_count: int) -> float:
        """Delay before re-attempt number ``retry_count`` (1-based)."""
        if retry_count <= 0:
            return 0.0
        delay = self.backoff_base_seconds * (self.backoff_factor ** (retry_count - 1))
        return min(delay, self.max_backoff_seconds)


class StepOutcomeKind(str, Enum):
    advance = "advance"
    retry = "retry"
    suspend = "suspend"
    fail = "fail"
    halted = "halted"


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of one Step Runner pass.

    Attributes:
        kind: What the drive loop should do next.
        plan: The latest persisted plan, or None when the plan was halted
            underneath the runner (e.g. cancelled).
    """

    kind: StepOutcomeKind
    plan: Optional[Plan]


@dataclass(frozen=True)
class RunnerDeps:
    """Dependency bundle for ``StepRunner`` and ``PlanRunner``."""

    store: PlanStore
    events: PlanEventRepository
    gate: ApprovalGate
    invoker: ToolInvoker
    locks: PlanLockManager
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


class _DriveState(TypedDict):
    """Mutable LangGraph state for one drive-loop invocation.

    - ``plan_id``: the plan being driven.
    - ``outcome``: the last routing decision made by a node.
    """

    plan_id: Required[str]
    outcome: NotRequired[str]
