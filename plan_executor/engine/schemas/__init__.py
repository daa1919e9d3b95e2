"""Domain schemas for plans, steps and their audit timeline."""

from .base import BaseSchema
from .domain import (
    ACTIVE_STEP_STATUSES,
    TERMINAL_PLAN_STATUSES,
    TERMINAL_STEP_STATUSES,
    ActionCategory,
    ActionSpec,
    ApprovalAction,
    Plan,
    PlanEvent,
    PlanEventType,
    PlanStatus,
    PlanStep,
    StepError,
    StepErrorKind,
    StepStatus,
    ToolErrorKind,
    Urgency,
)

__all__ = [
    "ACTIVE_STEP_STATUSES",
    "TERMINAL_PLAN_STATUSES",
    "TERMINAL_STEP_STATUSES",
    "ActionCategory",
    "ActionSpec",
    "ApprovalAction",
    "BaseSchema",
    "Plan",
    "PlanEvent",
    "PlanEventType",
    "PlanStatus",
    "PlanStep",
    "StepError",
    "StepErrorKind",
    "StepStatus",
    "ToolErrorKind",
    "Urgency",
]
