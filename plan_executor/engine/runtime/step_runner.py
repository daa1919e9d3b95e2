from __future__ import annotations

"""Step Runner.

Executes the step under the plan cursor to a terminal or suspended outcome:

1. A ``pending`` step is classified by the approval gate. A gated step moves
   to ``waiting_approval``, the plan to ``paused``, and the runner suspends.
2. An ungated, ``approved`` or already ``running`` step is marked ``running``
   and handed to the tool invoker with the step's idempotency token and the
   configured timeout.
3. Success completes the step. A retry-eligible failure with budget left
   bumps ``retry_count``; anything else fails the step.

Every write is a compare-and-swap against the version the runner read. When a
write loses the race because the plan left ``running`` (typically a cancel),
the runner discards what it was about to write and reports ``halted``.

Re-running a step that is already terminal never re-invokes the tool.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from ..errors import ConflictError, PlanNotFoundError, StepTimeoutError, ToolInvocationError
from ..schemas.domain import (
    Plan,
    PlanEvent,
    PlanEventType,
    PlanStatus,
    PlanStep,
    StepError,
    StepErrorKind,
    StepStatus,
)
from ..tools import ToolContext, ToolResult, idempotency_token
from .models import RunnerDeps, StepOutcome, StepOutcomeKind

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def save_while_running(deps: RunnerDeps, plan: Plan) -> Optional[Plan]:
    """Persist a working copy of a plan the caller believes is running.

    Returns None when the stored plan is no longer ``running``; the caller must
    then drop its working copy. Any other conflict propagates.
    """
    try:
        return await deps.store.save(plan, expected_version=plan.version)
    except ConflictError:
        fresh = await deps.store.get(plan.id)
        if fresh is None:
            raise PlanNotFoundError(plan.id)
        if fresh.status != PlanStatus.running:
            logger.info(f"Plan {plan.id} left running (now {fresh.status.value}); discarding pending write")
            return None
        raise


class StepRunner:
    """Execute exactly one step of a plan."""

    def __init__(self, deps: RunnerDeps) -> None:
        self._deps = deps

    async def _event(self, plan: Plan, type_: PlanEventType, step: PlanStep | None = None, **payload: Any) -> None:
        await self._deps.events.append(
            PlanEvent(
                plan_id=plan.id,
                type=type_,
                step_index=step.index if step is not None else None,
                payload=payload,
            )
        )

    async def run(self, plan: Plan, index: int) -> StepOutcome:
        """
        Run the step at ``index`` of a running plan.

        Args:
            plan: Freshly read working copy of the plan.
            index: The plan cursor.

        Returns:
            The outcome and the latest persisted plan.
        """
        if plan.status != PlanStatus.running:
            return StepOutcome(StepOutcomeKind.halted, plan)
        step = plan.steps[index]

        if step.status == StepStatus.completed:
            logger.debug(f"Step {index} of plan {plan.id} already completed; not re-invoking")
            return StepOutcome(StepOutcomeKind.advance, plan)
        if step.status == StepStatus.failed:
            return StepOutcome(StepOutcomeKind.fail, plan)
        if step.status in (StepStatus.rejected, StepStatus.waiting_approval):
            logger.warning(f"Plan {plan.id} is running but step {index} is {step.status.value}; halting")
            return StepOutcome(StepOutcomeKind.halted, plan)

        if step.status == StepStatus.pending:
            gated = self._deps.gate.classify(step)
            step.requires_approval = gated
            if gated:
                step.status = StepStatus.waiting_approval
                plan.status = PlanStatus.paused
                saved = await save_while_running(self._deps, plan)
                if saved is None:
                    return StepOutcome(StepOutcomeKind.halted, None)
                await self._event(
                    saved,
                    PlanEventType.approval_requested,
                    step,
                    description=step.description,
                    category=step.action_spec.category,
                    tool=step.action_spec.tool,
                )
                await self._event(saved, PlanEventType.plan_paused, step)
                logger.info(f"Plan {plan.id} paused for approval at step {index}")
                return StepOutcome(StepOutcomeKind.suspend, saved)

        return await self._execute(plan, index)

    async def _execute(self, plan: Plan, index: int) -> StepOutcome:
        step = plan.steps[index]
        resumed = step.status == StepStatus.running and step.error is None
        step.status = StepStatus.running
        if step.started_at is None:
            step.started_at = _utc_now()
        saved = await save_while_running(self._deps, plan)
        if saved is None:
            return StepOutcome(StepOutcomeKind.halted, None)
        plan = saved
        step = plan.steps[index]
        await self._event(
            plan,
            PlanEventType.step_started,
            step,
            attempt=step.retry_count + 1,
            resumed=resumed,
        )

        token = idempotency_token(step)
        timeout = self._deps.retry.step_timeout_seconds
        context = ToolContext(
            plan_id=plan.id,
            step_id=step.id,
            step_index=step.index,
            owner_id=plan.owner_id,
            organization_id=plan.organization_id,
            conversation_id=plan.conversation_id,
            prior_results=plan.prior_results(),
        )

        started = time.monotonic()
        result: Optional[ToolResult] = None
        error: Optional[StepError] = None
        try:
            result = await asyncio.wait_for(
                self._deps.invoker.invoke(step.action_spec, idempotency_token=token, timeout=timeout, context=context),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            err = StepTimeoutError(step.id, timeout)
            error = StepError(kind=StepErrorKind.timeout, message=str(err))
        except ToolInvocationError as e:
            error = StepError(kind=StepErrorKind(e.kind.value), message=e.message)
        except Exception as e:
            logger.error(f"Unclassified tool failure in plan {plan.id} step {index}: {e}", exc_info=True)
            error = StepError(
                kind=StepErrorKind.permanent,
                message=f"{type(e).__name__}: {e}",
                details={"unclassified": True},
            )
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if result is not None and not result.ok:
            kind = StepErrorKind(result.error_kind.value) if result.error_kind is not None else StepErrorKind.permanent
            error = StepError(kind=kind, message=result.error or "tool reported failure", details=dict(result.output))

        # The outcome is only written if the plan is still ours to advance.
        fresh = await self._deps.store.get(plan.id)
        if fresh is None:
            raise PlanNotFoundError(plan.id)
        if fresh.status != PlanStatus.running or fresh.version != plan.version:
            return await self._discard(fresh, step, ok=error is None)

        if error is None:
            return await self._complete(plan, index, result, elapsed_ms)
        return await self._failed_attempt(plan, index, error, elapsed_ms)

    async def _discard(self, fresh: Plan, step: PlanStep, *, ok: bool) -> StepOutcome:
        if fresh.status == PlanStatus.running:
            raise ConflictError(f"plan {fresh.id} was modified while step {step.index} was executing")
        logger.warning(
            f"Discarding late {'success' if ok else 'failure'} for step {step.index} of plan {fresh.id} "
            f"(plan is {fresh.status.value})"
        )
        await self._event(fresh, PlanEventType.step_result_discarded, step, ok=ok, plan_status=fresh.status.value)
        return StepOutcome(StepOutcomeKind.halted, None)

    async def _complete(self, plan: Plan, index: int, result: ToolResult, elapsed_ms: int) -> StepOutcome:
        step = plan.steps[index]
        step.status = StepStatus.completed
        step.result = dict(result.output)
        step.error = None
        step.completed_at = _utc_now()
        step.duration_ms = elapsed_ms
        if result.cost_usd:
            plan.total_cost_usd += float(result.cost_usd)
        saved = await save_while_running(self._deps, plan)
        if saved is None:
            return await self._discard_after_race(plan, step, ok=True)
        await self._event(saved, PlanEventType.step_completed, step, duration_ms=elapsed_ms, cost_usd=result.cost_usd)
        logger.info(f"Step {index} of plan {plan.id} completed in {elapsed_ms}ms")
        return StepOutcome(StepOutcomeKind.advance, saved)

    async def _failed_attempt(self, plan: Plan, index: int, error: StepError, elapsed_ms: int) -> StepOutcome:
        step = plan.steps[index]
        step.error = error
        step.duration_ms = elapsed_ms
        if error.kind.retryable and step.retry_count < step.max_retries:
            step.retry_count += 1
            saved = await save_while_running(self._deps, plan)
            if saved is None:
                return await self._discard_after_race(plan, step, ok=False)
            delay = self._deps.retry.backoff_for(step.retry_count)
            await self._event(
                saved,
                PlanEventType.step_retry_scheduled,
                step,
                retry_count=step.retry_count,
                max_retries=step.max_retries,
                delay_seconds=delay,
                error=error.model_dump(mode="json"),
            )
            logger.warning(
                f"Step {index} of plan {plan.id} failed ({error.kind.value}); "
                f"retry {step.retry_count}/{step.max_retries} in {delay:.2f}s"
            )
            return StepOutcome(StepOutcomeKind.retry, saved)

        step.status = StepStatus.failed
        step.completed_at = _utc_now()
        saved = await save_while_running(self._deps, plan)
        if saved is None:
            return await self._discard_after_race(plan, step, ok=False)
        await self._event(saved, PlanEventType.step_failed, step, error=error.model_dump(mode="json"))
        logger.warning(f"Step {index} of plan {plan.id} failed permanently: {error.message}")
        return StepOutcome(StepOutcomeKind.fail, saved)

    async def _discard_after_race(self, plan: Plan, step: PlanStep, *, ok: bool) -> StepOutcome:
        fresh = await self._deps.store.get(plan.id)
        if fresh is None:
            raise PlanNotFoundError(plan.id)
        return await self._discard(fresh, step, ok=ok)
