from __future__ import annotations

"""Plan Service: the public API of the executor.

``PlanService`` wires the planner to the runtime and enforces the caller-facing
preconditions before any state changes:

- ``create_and_start``: decompose the goal, persist the plan as ``pending`` and
  drive it once. The returned plan reflects the first suspension, completion or
  failure.
- ``approve`` / ``reject`` / ``decide``: owner-only decisions on a paused plan.
- ``cancel``: owner-only, from any non-terminal status.
- ``resume`` / ``recover``: drive plans left ``pending`` or ``running`` by a
  process that stopped, e.g. after a restart.

Tool failures never surface here as exceptions; callers read
``plan.status`` and ``step.error`` instead.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import ConflictError, ForbiddenError, InvalidApprovalActionError, PlanNotFoundError, PlanningFailedError
from .planning import Planner, StepSpec, normalize_specs
from .runtime import PlanRunner, RunnerDeps
from .schemas.domain import (
    ApprovalAction,
    Plan,
    PlanEvent,
    PlanEventType,
    PlanStatus,
    PlanStep,
    Urgency,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanServiceDeps:
    """Dependency bundle for ``PlanService``."""

    runner: RunnerDeps
    planner: Planner
    cancel_max_attempts: int = 3


class PlanService:
    """Create, inspect and steer plans on behalf of their owners."""

    def __init__(self, deps: PlanServiceDeps) -> None:
        self._deps = deps
        self._runner = PlanRunner(deps.runner)

    @property
    def runner(self) -> PlanRunner:
        return self._runner

    async def create_and_start(
        self,
        goal: str,
        *,
        owner_id: str,
        organization_id: str,
        steps_hint: Optional[str] = None,
        urgency: Urgency = Urgency.normal,
        conversation_id: Optional[str] = None,
    ) -> Plan:
        """
        Plan a goal, persist it and drive it until it first yields.

        Raises:
            PlanningFailedError: If the planner errors or yields no steps. Nothing
                is persisted in that case.
        """
        try:
            raw = await self._deps.planner.decompose(goal, steps_hint, Urgency(urgency))
            specs: List[StepSpec] = normalize_specs(raw)
        except PlanningFailedError:
            raise
        except Exception as e:
            logger.warning(f"Planner failed for goal {goal!r}: {e}")
            raise PlanningFailedError(str(e)) from e
        if not specs:
            raise PlanningFailedError("planner returned no steps")

        plan = Plan(
            owner_id=owner_id,
            organization_id=organization_id,
            goal=goal,
            steps_hint=steps_hint,
            urgency=Urgency(urgency),
            conversation_id=conversation_id,
        )
        max_retries = self._deps.runner.retry.max_retries
        plan.steps = [
            PlanStep(
                plan_id=plan.id,
                index=i,
                description=spec.description,
                action_spec=spec.action_spec,
                requires_approval_hint=spec.requires_approval_hint,
                max_retries=max_retries,
            )
            for i, spec in enumerate(specs)
        ]

        created = await self._deps.runner.store.create(plan)
        await self._deps.runner.events.append(
            PlanEvent(
                plan_id=created.id,
                type=PlanEventType.plan_created,
                payload={"goal": goal, "steps": len(created.steps), "urgency": created.urgency.value},
            )
        )
        logger.info(f"Plan {created.id} created for owner {owner_id} with {len(created.steps)} step(s)")
        try:
            return await self._runner.start(created.id)
        except ConflictError as e:
            # Already started by another driver (recovery picked up the pending plan).
            logger.info(f"Plan {created.id} is driven elsewhere: {e}")
            return await self.get(created.id)

    async def get(self, plan_id: str) -> Plan:
        plan = await self._deps.runner.store.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def list(
        self,
        owner_id: str,
        status: Optional[PlanStatus] = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Plan]:
        """List an owner's plans newest-first, optionally filtered by status."""
        return await self._deps.runner.store.list(owner_id=owner_id, status=status, limit=limit, offset=offset)

    async def events(self, plan_id: str, *, limit: int = 500) -> List[PlanEvent]:
        await self.get(plan_id)
        return await self._deps.runner.events.list(plan_id, limit=limit)

    async def _owned(self, plan_id: str, actor_id: str) -> Plan:
        plan = await self.get(plan_id)
        if actor_id != plan.owner_id:
            logger.warning(f"Actor {actor_id} denied on plan {plan_id} owned by {plan.owner_id}")
            raise ForbiddenError(plan_id, actor_id)
        return plan

    async def approve(self, plan_id: str, actor_id: str) -> Plan:
        """Approve the waiting step and resume the plan.

        Raises:
            PlanNotFoundError, ForbiddenError, ConflictError
        """
        plan = await self._owned(plan_id, actor_id)
        if plan.status != PlanStatus.paused:
            raise ConflictError(f"plan {plan_id} is {plan.status.value}, not paused")
        return await self._runner.approve(plan_id, decided_by=actor_id)

    async def reject(self, plan_id: str, actor_id: str) -> Plan:
        """Reject the waiting step; the plan ends ``cancelled``.

        Raises:
            PlanNotFoundError, ForbiddenError, ConflictError
        """
        plan = await self._owned(plan_id, actor_id)
        if plan.status != PlanStatus.paused:
            raise ConflictError(f"plan {plan_id} is {plan.status.value}, not paused")
        return await self._runner.reject(plan_id, decided_by=actor_id)

    async def decide(self, plan_id: str, actor_id: str, action: Optional[str]) -> Plan:
        """Dispatch a raw ``approve``/``reject`` token."""
        check = self._deps.runner.gate.validate_decision(action)
        if not check.valid:
            raise InvalidApprovalActionError(action)
        if check.action == ApprovalAction.approve:
            return await self.approve(plan_id, actor_id)
        return await self.reject(plan_id, actor_id)

    async def cancel(self, plan_id: str, actor_id: str) -> Plan:
        """Cancel a non-terminal plan owned by ``actor_id``.

        Raises:
            PlanNotFoundError, ForbiddenError, ConflictError
        """
        plan = await self._owned(plan_id, actor_id)
        if plan.is_terminal:
            raise ConflictError(f"plan {plan_id} is already {plan.status.value}")
        return await self._runner.cancel(
            plan_id,
            reason=f"Cancelled by {actor_id}",
            max_attempts=self._deps.cancel_max_attempts,
        )

    async def resume(self, plan_id: str) -> Plan:
        """Drive a plan that was left ``pending`` or ``running`` (e.g. after a restart).

        A ``pending`` plan is started; a ``running`` plan re-enters its drive loop
        at the cursor.

        Raises:
            PlanNotFoundError: If the plan does not exist.
            ConflictError: If the plan is in any other status or is driven elsewhere.
        """
        plan = await self.get(plan_id)
        return await self._drive_left_over(plan)

    async def _drive_left_over(self, plan: Plan) -> Plan:
        if plan.status == PlanStatus.pending:
            return await self._runner.start(plan.id)
        if plan.status == PlanStatus.running:
            return await self._runner.drive(plan.id)
        raise ConflictError(f"plan {plan.id} is {plan.status.value}, not pending or running")

    async def recover(self, *, batch_size: int = 100) -> List[Plan]:
        """Drive every persisted ``pending`` or ``running`` plan; plans driven elsewhere are skipped."""
        left_over: List[Plan] = []
        for status in (PlanStatus.pending, PlanStatus.running):
            offset = 0
            while True:
                batch = await self._deps.runner.store.list(status=status, limit=batch_size, offset=offset)
                left_over.extend(batch)
                if len(batch) < batch_size:
                    break
                offset += batch_size

        recovered: List[Plan] = []
        for plan in left_over:
            try:
                recovered.append(await self._drive_left_over(plan))
            except ConflictError as e:
                logger.info(f"Skipping recovery of plan {plan.id}: {e}")
        logger.info(f"Recovered {len(recovered)} of {len(left_over)} unfinished plan(s)")
        return recovered
