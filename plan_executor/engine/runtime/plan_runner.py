from __future__ import annotations

"""LangGraph drive loop.

``PlanRunner`` advances a plan through its steps until it suspends at an
approval gate or reaches a terminal status.

Execution model
---------------

- The loop is a LangGraph state machine whose state carries only the plan id
  and a routing decision. Every node re-reads the plan from the store; nothing
  held in memory is trusted across a node boundary.
- ``execute`` runs the Step Runner on ``steps[current_step_index]``.
- ``advance`` moves the cursor and persists before the next ``execute``.
- ``backoff`` waits (exponentially) before the same step is re-attempted.
- ``fail`` / ``complete`` write the terminal status.

State machine over ``Plan.status``
----------------------------------

- pending   -> running    (``start``)
- running   -> paused     (step suspends at the gate)
- paused    -> running    (``approve``)
- paused    -> cancelled  (``reject``)
- running   -> completed  (last step completes)
- running   -> failed     (a step fails permanently or exhausts retries)
- non-terminal -> cancelled (``cancel``)

``start``, ``drive``, ``approve`` and ``reject`` hold the plan lease so at most
one loop drives a plan at a time. ``cancel`` takes no lease; a loop driving the
plan notices on its next compare-and-swap write.

Re-entrancy
-----------

Driving a plan that is already ``running`` (for instance after a crash) picks
up at the cursor. A ``running`` step is re-attempted with the same idempotency
token; a ``completed`` step is advanced past without calling the tool again.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from langgraph.graph import END, StateGraph

from ..errors import ConflictError, PlanNotFoundError
from ..schemas.domain import (
    ACTIVE_STEP_STATUSES,
    ApprovalAction,
    Plan,
    PlanEvent,
    PlanEventType,
    PlanStatus,
    PlanStep,
    StepError,
    StepErrorKind,
    StepStatus,
)
from ..tools import idempotency_token
from .models import RunnerDeps, StepOutcomeKind, _DriveState
from .step_runner import StepRunner, save_while_running

logger = logging.getLogger(__name__)

_ROUTE_BY_OUTCOME = {
    StepOutcomeKind.advance: "advance",
    StepOutcomeKind.retry: "retry",
    StepOutcomeKind.fail: "fail",
    StepOutcomeKind.suspend: "stop",
    StepOutcomeKind.halted: "stop",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def plan_summary(plan: Plan) -> Dict[str, Any]:
    """Post-mortem summary attached to terminal events."""
    failed = next((s for s in plan.steps if s.status == StepStatus.failed), None)
    return {
        "status": plan.status.value,
        "steps_total": len(plan.steps),
        "steps_completed": sum(1 for s in plan.steps if s.status == StepStatus.completed),
        "failed_step": failed.index if failed is not None else None,
        "error": plan.error_message,
        "total_cost_usd": plan.total_cost_usd,
    }


class PlanRunner:
    """Drive plans step by step with persistence and approval gating."""

    def __init__(self, deps: RunnerDeps) -> None:
        """
        Initialize the PlanRunner.

        Args:
            deps: Store, event log, gate, tool invoker, locks and retry policy.
        """
        self._deps = deps
        self._steps = StepRunner(deps)
        self._graph = self._build_graph()

    def _build_graph(self):
        """Build and compile the LangGraph drive loop."""
        g: StateGraph = StateGraph(_DriveState)
        g.add_node("execute", self._node_execute)
        g.add_node("advance", self._node_advance)
        g.add_node("backoff", self._node_backoff)
        g.add_node("fail", self._node_fail)
        g.add_node("complete", self._node_complete)

        g.set_entry_point("execute")
        g.add_conditional_edges(
            "execute",
            self._route,
            {
                "advance": "advance",
                "retry": "backoff",
                "fail": "fail",
                "complete": "complete",
                "stop": END,
            },
        )
        g.add_conditional_edges("advance", self._route, {"continue": "execute", "stop": END})
        g.add_edge("backoff", "execute")
        g.add_edge("fail", END)
        g.add_edge("complete", END)
        return g.compile()

    # ------------------------------------------------------------------
    # public transitions
    # ------------------------------------------------------------------

    async def start(self, plan_id: str) -> Plan:
        """Move a freshly created plan from pending to running and drive it."""
        async with self._deps.locks.lease(plan_id):
            plan = await self._deps.store.compare_and_swap_status(
                plan_id, expected=PlanStatus.pending, new=PlanStatus.running
            )
            await self._event(plan, PlanEventType.plan_started, steps=len(plan.steps))
            logger.info(f"Plan {plan_id} started with {len(plan.steps)} step(s)")
            return await self._drive(plan_id)

    async def drive(self, plan_id: str) -> Plan:
        """Re-enter the drive loop for a plan; a no-op unless the plan is running."""
        async with self._deps.locks.lease(plan_id):
            return await self._drive(plan_id)

    async def approve(self, plan_id: str, *, decided_by: str) -> Plan:
        """Approve the waiting step of a paused plan and resume driving it."""
        async with self._deps.locks.lease(plan_id):
            plan, step = await self._waiting_step(plan_id)
            self._deps.gate.record_decision(step, action=ApprovalAction.approve, decided_by=decided_by)
            plan.status = PlanStatus.running
            saved = await self._deps.store.save(plan, expected_version=plan.version)
            await self._event(saved, PlanEventType.approval_resolved, step, action="approve", decided_by=decided_by)
            await self._event(saved, PlanEventType.plan_resumed, step)
            return await self._drive(plan_id)

    async def reject(self, plan_id: str, *, decided_by: str) -> Plan:
        """Reject the waiting step of a paused plan; the plan is cancelled and not resumed."""
        async with self._deps.locks.lease(plan_id):
            plan, step = await self._waiting_step(plan_id)
            self._deps.gate.record_decision(step, action=ApprovalAction.reject, decided_by=decided_by)
            plan.status = PlanStatus.cancelled
            plan.error_message = f"Step {step.index} rejected by {decided_by}"
            plan.completed_at = _utc_now()
            saved = await self._deps.store.save(plan, expected_version=plan.version)
            await self._event(saved, PlanEventType.approval_resolved, step, action="reject", decided_by=decided_by)
            await self._event(saved, PlanEventType.plan_cancelled, step, **plan_summary(saved))
            logger.info(f"Plan {plan_id} cancelled: step {step.index} rejected by {decided_by}")
            return saved

    async def cancel(self, plan_id: str, *, reason: str, max_attempts: int = 3) -> Plan:
        """
        Cancel a non-terminal plan.

        Cancellation is cooperative: the status is persisted immediately, the
        active step is closed as ``failed`` with kind ``cancelled``, and a
        running tool call is asked (best-effort) to abort. A loop currently
        driving the plan loses its next write and discards its result.

        Raises:
            PlanNotFoundError: If the plan does not exist.
            ConflictError: If the plan is terminal or every attempt lost a race.
        """
        for attempt in range(1, max_attempts + 1):
            plan = await self._deps.store.get(plan_id)
            if plan is None:
                raise PlanNotFoundError(plan_id)
            if plan.is_terminal:
                raise ConflictError(f"plan {plan_id} is already {plan.status.value}")

            in_flight: Optional[PlanStep] = None
            try:
                if plan.status == PlanStatus.pending:
                    cancelled = await self._deps.store.compare_and_swap_status(
                        plan_id, expected=PlanStatus.pending, new=PlanStatus.cancelled, error_message=reason
                    )
                else:
                    step = plan.current_step
                    if step is not None and step.status in ACTIVE_STEP_STATUSES:
                        if step.status == StepStatus.running:
                            in_flight = step.model_copy()
                        step.status = StepStatus.failed
                        step.error = StepError(kind=StepErrorKind.cancelled, message=reason)
                        step.completed_at = _utc_now()
                    plan.status = PlanStatus.cancelled
                    plan.error_message = reason
                    plan.completed_at = _utc_now()
                    cancelled = await self._deps.store.save(plan, expected_version=plan.version)
            except ConflictError:
                logger.debug(f"Cancel of plan {plan_id} lost a race (attempt {attempt}/{max_attempts}); re-reading")
                continue

            await self._event(cancelled, PlanEventType.plan_cancelled, **plan_summary(cancelled))
            logger.info(f"Plan {plan_id} cancelled: {reason}")
            if in_flight is not None:
                await self._abort(in_flight)
            return cancelled

        raise ConflictError(f"plan {plan_id} kept changing; cancel gave up after {max_attempts} attempts")

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    async def _drive(self, plan_id: str) -> Plan:
        plan = await self._load(plan_id)
        if plan.status == PlanStatus.running:
            # Every attempt visits execute and backoff; every step adds one advance.
            remaining = plan.steps[plan.current_step_index :]
            budget = sum((s.max_retries + 1) * 2 + 1 for s in remaining)
            state: _DriveState = {"plan_id": plan_id}
            await self._graph.ainvoke(state, config={"recursion_limit": budget + 10})
        return await self._load(plan_id)

    async def _load(self, plan_id: str) -> Plan:
        plan = await self._deps.store.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def _waiting_step(self, plan_id: str) -> tuple[Plan, PlanStep]:
        plan = await self._load(plan_id)
        if plan.status != PlanStatus.paused:
            raise ConflictError(f"plan {plan_id} is {plan.status.value}, not paused")
        step = plan.current_step
        if step is None or step.status != StepStatus.waiting_approval:
            raise ConflictError(f"plan {plan_id} has no step waiting for approval")
        return plan, step

    async def _event(self, plan: Plan, type_: PlanEventType, step: PlanStep | None = None, **payload: Any) -> None:
        await self._deps.events.append(
            PlanEvent(
                plan_id=plan.id,
                type=type_,
                step_index=step.index if step is not None else None,
                payload=payload,
            )
        )

    async def _abort(self, step: PlanStep) -> None:
        abort = getattr(self._deps.invoker, "abort", None)
        if not callable(abort):
            return
        try:
            await abort(idempotency_token(step))
        except Exception as e:
            logger.warning(f"Best-effort abort of step {step.index} of plan {step.plan_id} failed: {e}", exc_info=True)

    def _route(self, state: _DriveState) -> str:
        return str(state.get("outcome") or "stop")

    async def _node_execute(self, state: _DriveState) -> _DriveState:
        """Run the Step Runner on the step under the cursor."""
        plan = await self._load(state["plan_id"])
        if plan.status != PlanStatus.running:
            state["outcome"] = "stop"
            return state
        if plan.current_step_index >= len(plan.steps):
            state["outcome"] = "complete"
            return state
        outcome = await self._steps.run(plan, plan.current_step_index)
        state["outcome"] = _ROUTE_BY_OUTCOME[outcome.kind]
        return state

    async def _node_advance(self, state: _DriveState) -> _DriveState:
        """Move the cursor past a completed step; finish the plan after the last one."""
        plan = await self._load(state["plan_id"])
        if plan.status != PlanStatus.running:
            state["outcome"] = "stop"
            return state
        plan.current_step_index += 1
        finished = plan.current_step_index >= len(plan.steps)
        if finished:
            plan.status = PlanStatus.completed
            plan.completed_at = _utc_now()
        saved = await save_while_running(self._deps, plan)
        if saved is None:
            state["outcome"] = "stop"
            return state
        if finished:
            await self._event(saved, PlanEventType.plan_completed, **plan_summary(saved))
            logger.info(f"Plan {saved.id} completed")
            state["outcome"] = "stop"
        else:
            state["outcome"] = "continue"
        return state

    async def _node_backoff(self, state: _DriveState) -> _DriveState:
        """Wait before re-attempting the step under the cursor."""
        plan = await self._load(state["plan_id"])
        step = plan.current_step
        if step is not None:
            await self._deps.sleep(self._deps.retry.backoff_for(step.retry_count))
        return state

    async def _node_fail(self, state: _DriveState) -> _DriveState:
        """Fail the plan; the failed step and all earlier results stay for the post-mortem."""
        plan = await self._load(state["plan_id"])
        if plan.status != PlanStatus.running:
            return state
        step = plan.current_step
        plan.status = PlanStatus.failed
        plan.error_message = step.error.message if step is not None and step.error is not None else "step failed"
        plan.current_step_index = len(plan.steps)
        plan.completed_at = _utc_now()
        saved = await save_while_running(self._deps, plan)
        if saved is not None:
            await self._event(saved, PlanEventType.plan_failed, step, **plan_summary(saved))
            logger.info(f"Plan {saved.id} failed at step {step.index if step is not None else '?'}")
        return state

    async def _node_complete(self, state: _DriveState) -> _DriveState:
        """Close a running plan whose cursor is already past the last step."""
        try:
            plan = await self._deps.store.compare_and_swap_status(
                state["plan_id"], expected=PlanStatus.running, new=PlanStatus.completed
            )
        except ConflictError:
            logger.info(f"Plan {state['plan_id']} left running before it could be completed")
            return state
        await self._event(plan, PlanEventType.plan_completed, **plan_summary(plan))
        return state
