"""
Plans API Endpoints.

Create plans and steer them through their lifecycle: inspection, approval
decisions, cancellation and the "continue" hook that drives a plan left pending
or running.

Engine errors are raised as-is and rendered by the registered exception
handlers (404 / 403 / 409 / 422).
"""

from typing import List, Optional

from fastapi import APIRouter, Query

from plan_executor.core.logging_config import get_logger
from plan_executor.engine.schemas.domain import Plan, PlanEvent, PlanStatus
from plan_executor.server.schemas import ActorRequest, DecisionRequest, PlanCreate
from plan_executor.server.services.deps import PlanServiceDep

logger = get_logger(__name__)
router = APIRouter()


@router.post(
    "/",
    response_model=Plan,
    status_code=201,
    summary="Create Plan",
    description="Decompose a goal into steps, persist the plan and drive it until it first yields.",
    response_description="The plan after its first pause, completion or failure.",
)
async def create_plan(plan_in: PlanCreate, service: PlanServiceDep):
    """
    Create and start a plan.

    - **goal**: Free-text goal.
    - **owner_id** / **organization_id**: Opaque tenant scoping.
    - **steps_hint**, **urgency**, **conversation_id**: Optional planner inputs.
    """
    logger.info(f"Creating plan for owner {plan_in.owner_id}: {plan_in.goal!r}")
    return await service.create_and_start(
        plan_in.goal,
        owner_id=plan_in.owner_id,
        organization_id=plan_in.organization_id,
        steps_hint=plan_in.steps_hint,
        urgency=plan_in.urgency,
        conversation_id=plan_in.conversation_id,
    )


@router.get(
    "/",
    response_model=List[Plan],
    summary="List Plans",
    description="List an owner's plans newest-first, optionally filtered by status.",
)
async def list_plans(
    service: PlanServiceDep,
    owner_id: str = Query(..., min_length=1),
    status: Optional[PlanStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    return await service.list(owner_id, status, limit=limit, offset=offset)


@router.get(
    "/{plan_id}",
    response_model=Plan,
    summary="Get Plan",
    responses={404: {"description": "Plan not found"}},
)
async def get_plan(plan_id: str, service: PlanServiceDep):
    return await service.get(plan_id)


@router.get(
    "/{plan_id}/events",
    response_model=List[PlanEvent],
    summary="List Plan Events",
    description="The plan's audit timeline, oldest first.",
)
async def list_plan_events(plan_id: str, service: PlanServiceDep, limit: int = Query(500, ge=1, le=5000)):
    return await service.events(plan_id, limit=limit)


@router.post(
    "/{plan_id}/approve",
    response_model=Plan,
    summary="Approve Waiting Step",
    responses={403: {"description": "Actor is not the owner"}, 409: {"description": "Plan is not paused"}},
)
async def approve_plan_step(plan_id: str, body: ActorRequest, service: PlanServiceDep):
    """Approve the step the plan is paused on and resume execution."""
    return await service.approve(plan_id, body.actor_id)


@router.post(
    "/{plan_id}/reject",
    response_model=Plan,
    summary="Reject Waiting Step",
    responses={403: {"description": "Actor is not the owner"}, 409: {"description": "Plan is not paused"}},
)
async def reject_plan_step(plan_id: str, body: ActorRequest, service: PlanServiceDep):
    """Reject the step the plan is paused on; the plan is cancelled."""
    return await service.reject(plan_id, body.actor_id)


@router.post(
    "/{plan_id}/decision",
    response_model=Plan,
    summary="Submit Approval Decision",
    responses={422: {"description": "Action is neither 'approve' nor 'reject'"}},
)
async def submit_decision(plan_id: str, body: DecisionRequest, service: PlanServiceDep):
    return await service.decide(plan_id, body.actor_id, body.action)


@router.post(
    "/{plan_id}/cancel",
    response_model=Plan,
    summary="Cancel Plan",
    responses={403: {"description": "Actor is not the owner"}, 409: {"description": "Plan already terminal"}},
)
async def cancel_plan(plan_id: str, body: ActorRequest, service: PlanServiceDep):
    """
    Cancel a plan.

    Cancellation is cooperative: the status is persisted immediately and a
    late tool result is discarded.
    """
    return await service.cancel(plan_id, body.actor_id)


@router.post(
    "/{plan_id}/continue",
    response_model=Plan,
    summary="Continue Plan",
    description="Start a plan left pending or re-enter the drive loop of a running one, e.g. after a server restart.",
    responses={409: {"description": "Plan is neither pending nor running, or is being driven elsewhere"}},
)
async def continue_plan(plan_id: str, service: PlanServiceDep):
    return await service.resume(plan_id)
