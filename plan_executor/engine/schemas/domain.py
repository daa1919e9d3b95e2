from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import Field

from .base import BaseSchema


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Urgency(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"


class PlanStatus(str, Enum):
    pending = "pending"
    running = "running"
    paused = "paused"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.completed, PlanStatus.failed, PlanStatus.cancelled})


class StepStatus(str, Enum):
    pending = "pending"
    waiting_approval = "waiting_approval"
    approved = "approved"
    rejected = "rejected"
    running = "running"
    completed = "completed"
    failed = "failed"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.completed, StepStatus.failed, StepStatus.rejected})

# Steps occupying the plan cursor between "picked up" and "terminal".
ACTIVE_STEP_STATUSES = frozenset({StepStatus.waiting_approval, StepStatus.approved, StepStatus.running})


class ApprovalAction(str, Enum):
    approve = "approve"
    reject = "reject"


class ActionCategory(str, Enum):
    """Known categories of step actions.

    Anything a planner emits outside this list is mapped to ``unknown`` at the
    approval gate and is always gated.
    """

    read_data = "read_data"
    web_browse = "web_browse"
    research = "research"
    summarize = "summarize"
    draft_content = "draft_content"
    create_record = "create_record"
    update_record = "update_record"
    run_code = "run_code"
    send_message = "send_message"
    send_email = "send_email"
    make_payment = "make_payment"
    delete_data = "delete_data"
    contact_third_party = "contact_third_party"
    unknown = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> "ActionCategory":
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.unknown


class ToolErrorKind(str, Enum):
    transient = "transient"
    permanent = "permanent"
    invalid_input = "invalid_input"


class StepErrorKind(str, Enum):
    transient = "transient"
    permanent = "permanent"
    invalid_input = "invalid_input"
    timeout = "timeout"
    cancelled = "cancelled"

    @property
    def retryable(self) -> bool:
        return self in (StepErrorKind.transient, StepErrorKind.timeout)


class PlanEventType(str, Enum):
    plan_created = "plan.created"
    plan_started = "plan.started"
    plan_paused = "plan.paused"
    plan_resumed = "plan.resumed"
    plan_completed = "plan.completed"
    plan_failed = "plan.failed"
    plan_cancelled = "plan.cancelled"
    step_started = "step.started"
    step_completed = "step.completed"
    step_retry_scheduled = "step.retry_scheduled"
    step_failed = "step.failed"
    step_result_discarded = "step.result_discarded"
    approval_requested = "approval.requested"
    approval_resolved = "approval.resolved"


class ActionSpec(BaseSchema):
    """Payload handed to the tool invoker.

    ``category`` is kept as the raw string the planner produced; the approval
    gate is the only place it gets interpreted.
    """

    category: str
    tool: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)


class StepError(BaseSchema):
    kind: StepErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PlanStep(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    plan_id: str
    index: int = Field(ge=0)

    description: str
    action_spec: ActionSpec
    requires_approval_hint: bool = False
    requires_approval: Optional[bool] = None

    status: StepStatus = StepStatus.pending
    result: Optional[Dict[str, Any]] = None
    error: Optional[StepError] = None

    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)

    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class Plan(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str
    organization_id: str

    goal: str
    steps_hint: Optional[str] = None
    urgency: Urgency = Urgency.normal
    conversation_id: Optional[str] = None

    status: PlanStatus = PlanStatus.pending
    current_step_index: int = Field(default=0, ge=0)
    steps: List[PlanStep] = Field(default_factory=list)

    error_message: Optional[str] = None
    total_cost_usd: float = 0.0

    version: int = 0

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    @property
    def current_step(self) -> Optional[PlanStep]:
        if self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def active_steps(self) -> List[PlanStep]:
        return [s for s in self.steps if s.status in ACTIVE_STEP_STATUSES]

    def prior_results(self) -> List[Dict[str, Any]]:
        """Results of completed steps before the cursor, in execution order."""
        return [
            {"index": s.index, "description": s.description, "result": s.result}
            for s in self.steps[: self.current_step_index]
            if s.status == StepStatus.completed
        ]


class PlanEvent(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    plan_id: str

    type: PlanEventType
    step_index: Optional[int] = None
    created_at: datetime = Field(default_factory=_utc_now)

    payload: Dict[str, Any] = Field(default_factory=dict)
