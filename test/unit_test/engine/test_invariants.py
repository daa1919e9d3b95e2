"""
Snapshot invariants.

Every write to the store is recorded and checked: at most one active step,
a cursor that never moves backwards, no movement after a terminal status and
an ``updated_at`` that never decreases.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Dict, List

import pytest

from plan_executor.engine.repos import InMemoryPlanStore
from plan_executor.engine.schemas import Plan, PlanStatus, ToolErrorKind
from plan_executor.engine.service import PlanService, PlanServiceDeps
from plan_executor.engine.tools import ToolResult


class _RecordingStore(InMemoryPlanStore):
    def __init__(self) -> None:
        super().__init__()
        self.snapshots: Dict[str, List[Plan]] = {}

    def _record(self, plan: Plan) -> Plan:
        self.snapshots.setdefault(plan.id, []).append(plan.model_copy(deep=True))
        return plan

    async def create(self, plan: Plan) -> Plan:
        return self._record(await super().create(plan))

    async def save(self, plan: Plan, *, expected_version: int) -> Plan:
        return self._record(await super().save(plan, expected_version=expected_version))

    async def compare_and_swap_status(self, plan_id, *, expected, new, error_message=None) -> Plan:
        return self._record(
            await super().compare_and_swap_status(plan_id, expected=expected, new=new, error_message=error_message)
        )


@pytest.fixture
def recording_store() -> _RecordingStore:
    return _RecordingStore()


@pytest.fixture
def recorded_service(runner_deps, planner, recording_store) -> PlanService:
    return PlanService(PlanServiceDeps(runner=replace(runner_deps, store=recording_store), planner=planner))


def _check_history(history: List[Plan], invariants) -> None:
    for snapshot in history:
        if snapshot.status != PlanStatus.running:
            invariants(snapshot)
        active = [s for s in snapshot.steps if s.status.value in ("running", "waiting_approval")]
        assert len(active) <= 1
    for before, after in zip(history, history[1:]):
        assert after.version > before.version
        assert after.updated_at >= before.updated_at
        assert after.current_step_index >= before.current_step_index
        if before.is_terminal:
            assert after.current_step_index == before.current_step_index
            assert after.status == before.status


@pytest.mark.asyncio
async def test_invariants_hold_across_gated_flow(recorded_service, recording_store, planner, spec, invariants) -> None:
    planner.steps = [spec("summarize"), spec("send_email"), spec("research")]

    plan = await recorded_service.create_and_start("g", owner_id="u1", organization_id="o1")
    await recorded_service.approve(plan.id, "u1")

    _check_history(recording_store.snapshots[plan.id], invariants)
    assert recording_store.snapshots[plan.id][-1].status == PlanStatus.completed


@pytest.mark.asyncio
async def test_invariants_hold_across_retries_and_failure(
    recorded_service, recording_store, planner, spec, invoker, invariants
) -> None:
    planner.steps = [spec("summarize"), spec("research"), spec("summarize")]
    invoker.script(1, ToolResult.failure(ToolErrorKind.transient, "busy"))

    plan = await recorded_service.create_and_start("g", owner_id="u1", organization_id="o1")

    _check_history(recording_store.snapshots[plan.id], invariants)
    assert plan.status == PlanStatus.failed


@pytest.mark.asyncio
async def test_invariants_hold_across_cancel(recorded_service, recording_store, planner, spec, invoker, invariants) -> None:
    planner.steps = [spec("summarize"), spec("run_code")]
    invoker.script(1, ToolResult.success({"late": True}))

    release = invoker.hold_at(1)
    creating = asyncio.create_task(recorded_service.create_and_start("g", owner_id="u1", organization_id="o1"))
    while not invoker.calls_for(1):
        await asyncio.sleep(0)
    [plan] = await recorded_service.list("u1")
    await recorded_service.cancel(plan.id, "u1")
    release.set()
    await creating

    _check_history(recording_store.snapshots[plan.id], invariants)
    assert recording_store.snapshots[plan.id][-1].status == PlanStatus.cancelled
