from __future__ import annotations

"""Approval gate.

``ApprovalGate`` is the authority on two questions:

- Does this step need human sign-off before it runs? (``classify``)
- Is this human decision well formed? (``validate_decision``)

Classification is a pure function of the step's action spec (and, optionally,
its planner hint) against the configured ``ApprovalPolicy``. Replaying a plan
after a crash therefore always gates the same steps.

Ownership checks are not done here; the service verifies the actor before it
reaches the gate.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..errors import ConflictError
from ..schemas.domain import ActionCategory, ApprovalAction, PlanStep, StepStatus
from .models import ApprovalDecisionCheck, ApprovalPolicy

logger = logging.getLogger(__name__)


class ApprovalGate:
    def __init__(self, policy: ApprovalPolicy | None = None) -> None:
        self._policy = policy or ApprovalPolicy()

    @property
    def policy(self) -> ApprovalPolicy:
        return self._policy

    def category_of(self, step: PlanStep) -> ActionCategory:
        return ActionCategory.parse(step.action_spec.category)

    def classify(self, step: PlanStep) -> bool:
        """
        Decide whether a step is gated.

        Args:
            step: The step about to be executed for the first time.

        Returns:
            True if a human must approve the step first.
        """
        category = self.category_of(step)
        if category == ActionCategory.unknown or category in self._policy.gated_categories:
            return True
        tool = step.action_spec.tool
        if tool is not None and tool in self._policy.gated_tools:
            return True
        if self._policy.honor_planner_hints and step.requires_approval_hint:
            return True
        return False

    def validate_decision(self, raw_action: Optional[str]) -> ApprovalDecisionCheck:
        """
        Validate a raw decision token.

        Only the literals ``approve`` and ``reject`` are accepted (case-insensitive,
        surrounding whitespace ignored).
        """
        token = (raw_action or "").strip().lower()
        try:
            return ApprovalDecisionCheck(valid=True, action=ApprovalAction(token))
        except ValueError:
            return ApprovalDecisionCheck(valid=False, action=None)

    def record_decision(
        self,
        step: PlanStep,
        *,
        action: ApprovalAction,
        decided_by: str,
        decided_at: datetime | None = None,
    ) -> PlanStep:
        """Fold a human decision into the waiting step."""
        if step.status != StepStatus.waiting_approval:
            raise ConflictError(f"step {step.index} is not waiting for approval (status={step.status.value})")
        step.status = StepStatus.approved if action == ApprovalAction.approve else StepStatus.rejected
        step.decided_by = decided_by
        step.decided_at = decided_at or datetime.now(timezone.utc)
        logger.info(f"Step {step.index} of plan {step.plan_id} {step.status.value} by {decided_by}")
        return step
