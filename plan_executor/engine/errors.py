from __future__ import annotations

from typing import Optional

from .schemas.domain import ToolErrorKind


class PlanExecutorError(Exception):
    pass


class PlanningFailedError(PlanExecutorError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Planning failed: {message}")
        self.reason = message


class PlanNotFoundError(PlanExecutorError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan not found: '{plan_id}'")
        self.plan_id = plan_id


class ForbiddenError(PlanExecutorError):
    def __init__(self, plan_id: str, actor_id: str) -> None:
        super().__init__(f"Actor '{actor_id}' is not the owner of plan '{plan_id}'")
        self.plan_id = plan_id
        self.actor_id = actor_id


class ConflictError(PlanExecutorError):
    pass


class InvalidApprovalActionError(PlanExecutorError):
    def __init__(self, raw_action: Optional[str]) -> None:
        super().__init__(f"Invalid approval action: {raw_action!r} (expected 'approve' or 'reject')")
        self.raw_action = raw_action


class ToolInvocationError(PlanExecutorError):
    """Raised by tool invokers that prefer exceptions over error results."""

    def __init__(self, kind: ToolErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = ToolErrorKind(kind)
        self.message = message


class StepTimeoutError(PlanExecutorError):
    def __init__(self, step_id: str, timeout: float) -> None:
        super().__init__(f"Step '{step_id}' exceeded its execution budget of {timeout}s")
        self.step_id = step_id
        self.timeout = timeout
