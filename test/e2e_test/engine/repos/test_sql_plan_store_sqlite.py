from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from plan_executor.core.config import Settings
from plan_executor.engine.errors import ConflictError, PlanNotFoundError
from plan_executor.engine.factory import build_plan_service
from plan_executor.engine.repos.models import PlanEventRow, PlanLeaseRow, PlanStepRow
from plan_executor.engine.repos.sql import build_sql_repos, create_all, create_engine, create_sessionmaker
from plan_executor.engine.schemas import (
    ActionSpec,
    Plan,
    PlanEvent,
    PlanEventType,
    PlanStatus,
    PlanStep,
    StepError,
    StepErrorKind,
    StepStatus,
)
from plan_executor.engine.schemas import ToolErrorKind
from plan_executor.engine.tools import ToolResult


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'plans.db'}")
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine):
    return create_sessionmaker(engine)


@pytest.fixture
def repos(session_factory):
    return build_sql_repos(session_factory=session_factory, lease_ttl_seconds=60)


def _plan(owner: str = "u1", *, steps: int = 2, created_at: datetime | None = None) -> Plan:
    plan = Plan(owner_id=owner, organization_id="o1", goal="g")
    if created_at is not None:
        plan.created_at = created_at
        plan.updated_at = created_at
    plan.steps = [
        PlanStep(
            plan_id=plan.id,
            index=i,
            description=f"s{i}",
            action_spec=ActionSpec(category="summarize", args={"text": f"t{i}"}),
        )
        for i in range(steps)
    ]
    return plan


@pytest.mark.asyncio
async def test_create_get_roundtrip_keeps_step_order(repos) -> None:
    plan = _plan(steps=3)
    await repos.plans.create(plan)

    loaded = await repos.plans.get(plan.id)

    assert loaded is not None
    assert [s.index for s in loaded.steps] == [0, 1, 2]
    assert loaded.steps[1].action_spec.args == {"text": "t1"}
    assert loaded.created_at.tzinfo is not None
    assert await repos.plans.get("missing") is None


@pytest.mark.asyncio
async def test_duplicate_create_conflicts(repos) -> None:
    plan = _plan()
    await repos.plans.create(plan)
    with pytest.raises(ConflictError):
        await repos.plans.create(plan)


@pytest.mark.asyncio
async def test_save_writes_plan_and_steps_under_version_guard(repos, session_factory) -> None:
    plan = _plan()
    await repos.plans.create(plan)

    working = await repos.plans.get(plan.id)
    stale = await repos.plans.get(plan.id)
    working.status = PlanStatus.failed
    working.current_step_index = 2
    working.steps[0].status = StepStatus.failed
    working.steps[0].error = StepError(kind=StepErrorKind.permanent, message="boom")
    saved = await repos.plans.save(working, expected_version=0)

    assert saved.version == 1
    assert saved.updated_at >= plan.updated_at

    stale.status = PlanStatus.completed
    with pytest.raises(ConflictError):
        await repos.plans.save(stale, expected_version=0)

    loaded = await repos.plans.get(plan.id)
    assert loaded.status == PlanStatus.failed
    assert loaded.steps[0].error.message == "boom"
    async with session_factory() as s:
        rows = (await s.execute(select(PlanStepRow).where(PlanStepRow.plan_id == plan.id))).scalars().all()
    assert {r.status for r in rows} == {"failed", "pending"}


@pytest.mark.asyncio
async def test_save_rejects_step_layout_changes(repos) -> None:
    plan = _plan()
    await repos.plans.create(plan)

    loaded = await repos.plans.get(plan.id)
    loaded.steps = loaded.steps[:1]
    with pytest.raises(ConflictError):
        await repos.plans.save(loaded, expected_version=0)

    with pytest.raises(PlanNotFoundError):
        await repos.plans.save(_plan(), expected_version=0)


@pytest.mark.asyncio
async def test_status_cas(repos) -> None:
    plan = _plan()
    await repos.plans.create(plan)

    running = await repos.plans.compare_and_swap_status(plan.id, expected=PlanStatus.pending, new=PlanStatus.running)
    assert running.status == PlanStatus.running
    assert running.version == 1

    with pytest.raises(ConflictError):
        await repos.plans.compare_and_swap_status(plan.id, expected=PlanStatus.pending, new=PlanStatus.cancelled)

    cancelled = await repos.plans.compare_and_swap_status(
        plan.id, expected=PlanStatus.running, new=PlanStatus.cancelled, error_message="stop"
    )
    assert cancelled.error_message == "stop"
    assert cancelled.completed_at is not None

    with pytest.raises(PlanNotFoundError):
        await repos.plans.compare_and_swap_status("missing", expected=PlanStatus.pending, new=PlanStatus.running)


@pytest.mark.asyncio
async def test_list_filters_and_orders_newest_first(repos) -> None:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    older = _plan(created_at=base)
    newer = _plan(created_at=base + timedelta(minutes=5))
    other = _plan("u2", created_at=base + timedelta(minutes=10))
    for p in (older, newer, other):
        await repos.plans.create(p)
    await repos.plans.compare_and_swap_status(older.id, expected=PlanStatus.pending, new=PlanStatus.running)

    assert [p.id for p in await repos.plans.list(owner_id="u1")] == [newer.id, older.id]
    assert [p.id for p in await repos.plans.list(owner_id="u1", status=PlanStatus.running)] == [older.id]
    assert [p.id for p in await repos.plans.list(owner_id="u1", limit=1, offset=1)] == [older.id]
    listed = await repos.plans.list()
    assert len(listed) == 3
    assert all(len(p.steps) == 2 for p in listed)
    assert await repos.plans.list(owner_id="nobody") == []


@pytest.mark.asyncio
async def test_events_list_in_append_order_even_with_equal_timestamps(repos, session_factory) -> None:
    plan = _plan()
    await repos.plans.create(plan)
    tick = datetime(2026, 1, 1, tzinfo=timezone.utc)
    appended = [
        PlanEventType.plan_started,
        PlanEventType.step_started,
        PlanEventType.approval_requested,
        PlanEventType.plan_paused,
    ]
    for type_ in appended:
        await repos.events.append(PlanEvent(plan_id=plan.id, type=type_, step_index=0, created_at=tick))
    await repos.events.append(
        PlanEvent(plan_id="other", type=PlanEventType.plan_created, payload={"attempt": 1}, created_at=tick)
    )

    events = await repos.events.list(plan.id)

    assert [e.type for e in events] == appended
    assert [e.type for e in await repos.events.list(plan.id, limit=2)] == appended[:2]
    assert (await repos.events.list("other"))[0].payload == {"attempt": 1}
    assert await repos.events.list("missing") == []
    async with session_factory() as s:
        seqs = (await s.execute(select(PlanEventRow.seq).where(PlanEventRow.plan_id == plan.id))).scalars().all()
    assert sorted(seqs) == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_lease_is_exclusive_and_released(repos, session_factory) -> None:
    async with repos.leases.lease("p1"):
        with pytest.raises(ConflictError):
            async with repos.leases.lease("p1"):
                pass
        async with repos.leases.lease("p2"):
            pass

    async with session_factory() as s:
        assert (await s.execute(select(PlanLeaseRow))).scalars().all() == []

    async with repos.leases.lease("p1"):
        pass


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(repos, session_factory) -> None:
    async with session_factory() as s:
        s.add(
            PlanLeaseRow(
                plan_id="p1",
                holder="crashed-host:1:dead",
                expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
            )
        )
        await s.commit()

    async with repos.leases.lease("p1"):
        async with session_factory() as s:
            row = await s.get(PlanLeaseRow, "p1")
            assert row.holder != "crashed-host:1:dead"


@pytest.mark.asyncio
async def test_service_flow_over_sql(session_factory, planner, invoker, spec) -> None:
    sleeps = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    settings = Settings(PLAN_EXECUTOR_LOCK_BACKEND="sql", PLAN_EXECUTOR_MAX_RETRIES=2)
    service = build_plan_service(
        settings=settings, session_factory=session_factory, planner=planner, invoker=invoker, sleep=_sleep
    )
    planner.steps = [spec("research"), spec("send_email"), spec("summarize")]
    invoker.script(0, ToolResult.failure(ToolErrorKind.transient, "flaky"), ToolResult.success({"ok": True}))

    plan = await service.create_and_start("research and email", owner_id="u1", organization_id="o1")

    assert plan.status == PlanStatus.paused
    assert plan.current_step_index == 1
    assert plan.steps[0].retry_count == 1
    assert len(sleeps) == 1

    done = await service.approve(plan.id, "u1")

    assert done.status == PlanStatus.completed
    assert [s.status for s in done.steps] == [StepStatus.completed] * 3
    assert done.steps[1].decided_by == "u1"
    assert (await service.get(plan.id)).version == done.version

    types = {e.type for e in await service.events(plan.id)}
    assert {
        PlanEventType.plan_created,
        PlanEventType.step_retry_scheduled,
        PlanEventType.approval_requested,
        PlanEventType.approval_resolved,
        PlanEventType.plan_completed,
    } <= types


@pytest.mark.asyncio
async def test_live_lease_is_renewed_past_its_ttl(session_factory) -> None:
    leases = build_sql_repos(session_factory=session_factory, lease_ttl_seconds=0.2).leases

    async with leases.lease("p1"):
        await asyncio.sleep(0.5)
        with pytest.raises(ConflictError):
            async with leases.lease("p1"):
                pass
        async with session_factory() as s:
            row = await s.get(PlanLeaseRow, "p1")
            assert row.expires_at.replace(tzinfo=timezone.utc) > datetime.now(timezone.utc)

    async with session_factory() as s:
        assert await s.get(PlanLeaseRow, "p1") is None


@pytest.mark.asyncio
async def test_slow_step_keeps_other_workers_out(session_factory, planner, invoker, spec) -> None:
    settings = Settings(PLAN_EXECUTOR_LEASE_TTL_SECONDS=0.2)
    worker_a = build_plan_service(settings=settings, session_factory=session_factory, planner=planner, invoker=invoker)
    worker_b = build_plan_service(settings=settings, session_factory=session_factory, planner=planner, invoker=invoker)
    planner.steps = [spec("research"), spec("summarize")]
    release = invoker.hold_at(0)

    creating = asyncio.create_task(worker_a.create_and_start("slow research", owner_id="u1", organization_id="o1"))
    await invoker.started.wait()
    await asyncio.sleep(0.5)
    (running,) = await worker_b.list("u1")
    assert running.status == PlanStatus.running

    with pytest.raises(ConflictError):
        await worker_b.resume(running.id)
    assert await worker_b.recover() == []

    release.set()
    plan = await creating

    assert plan.status == PlanStatus.completed
    assert len(invoker.calls_for(0)) == 1
    assert len(invoker.calls_for(1)) == 1
