from __future__ import annotations

"""SQLAlchemy async repository implementations.

Usage
-----

- Create an async engine with ``create_engine``.
- Create tables with ``create_all`` (tests/dev; production uses the alembic revision).
- Create a session factory with ``create_sessionmaker``.
- Build repository instances with ``build_sql_repos``.

Transaction model
-----------------

Each repository method opens an ``AsyncSession``, performs its operation and
commits. A plan write updates the ``gm_plans`` row guarded by ``version`` and
all of its ``gm_plan_steps`` rows in the same transaction, so a snapshot
never mixes plan and step state from different writes.
"""

import asyncio
import logging
import os
import re
import socket
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..errors import ConflictError, PlanNotFoundError
from ..schemas.domain import (
    TERMINAL_PLAN_STATUSES,
    ActionSpec,
    Plan,
    PlanEvent,
    PlanEventType,
    PlanStatus,
    PlanStep,
    StepError,
    StepStatus,
    Urgency,
)
from .interfaces import PlanEventRepository, PlanLockManager, PlanStore
from .models import Base, PlanEventRow, PlanLeaseRow, PlanRow, PlanStepRow

logger = logging.getLogger(__name__)


def create_engine(db_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Postgres URLs are normalized to the async driver, e.g. ``postgresql://``
    becomes ``postgresql+asyncpg://``.
    """
    url = re.sub(r"^postgres(?:ql)?(?:\+[a-z0-9_]+)?://", "postgresql+asyncpg://", db_url, count=1)
    return create_async_engine(url, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an ``async_sessionmaker`` with safe defaults for this project."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables for the current ORM metadata.

    This is mainly intended for tests and local development.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _step_to_row(step: PlanStep) -> PlanStepRow:
    row = PlanStepRow(id=step.id, plan_id=step.plan_id, index=step.index)
    _apply_step(row, step)
    return row


def _apply_step(row: PlanStepRow, step: PlanStep) -> None:
    row.description = step.description
    row.action_spec = step.action_spec.model_dump(mode="json")
    row.requires_approval_hint = step.requires_approval_hint
    row.requires_approval = step.requires_approval
    row.status = step.status.value
    row.result = step.result
    row.error = step.error.model_dump(mode="json") if step.error is not None else None
    row.retry_count = step.retry_count
    row.max_retries = step.max_retries
    row.decided_by = step.decided_by
    row.decided_at = step.decided_at
    row.started_at = step.started_at
    row.completed_at = step.completed_at
    row.duration_ms = step.duration_ms


def _row_to_step(row: PlanStepRow) -> PlanStep:
    return PlanStep(
        id=row.id,
        plan_id=row.plan_id,
        index=row.index,
        description=row.description,
        action_spec=ActionSpec.model_validate(row.action_spec),
        requires_approval_hint=row.requires_approval_hint,
        requires_approval=row.requires_approval,
        status=StepStatus(row.status),
        result=row.result,
        error=StepError.model_validate(row.error) if row.error is not None else None,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        decided_by=row.decided_by,
        decided_at=_as_utc(row.decided_at),
        started_at=_as_utc(row.started_at),
        completed_at=_as_utc(row.completed_at),
        duration_ms=row.duration_ms,
    )


def _row_to_plan(row: PlanRow, steps: Iterable[PlanStepRow]) -> Plan:
    return Plan(
        id=row.id,
        owner_id=row.owner_id,
        organization_id=row.organization_id,
        goal=row.goal,
        steps_hint=row.steps_hint,
        urgency=Urgency(row.urgency),
        conversation_id=row.conversation_id,
        status=PlanStatus(row.status),
        current_step_index=row.current_step_index,
        steps=[_row_to_step(s) for s in sorted(steps, key=lambda s: s.index)],
        error_message=row.error_message,
        total_cost_usd=row.total_cost_usd,
        version=row.version,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        completed_at=_as_utc(row.completed_at),
    )


@dataclass(frozen=True)
class SqlPlanStore(PlanStore):
    """SQL implementation of ``PlanStore`` (plan table + step table)."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, plan: Plan) -> Plan:
        """
        Persist a new plan and its steps in one transaction.

        Args:
            plan: The plan domain object to insert.
        """
        async with self.session_factory() as s:
            s.add(
                PlanRow(
                    id=plan.id,
                    owner_id=plan.owner_id,
                    organization_id=plan.organization_id,
                    goal=plan.goal,
                    steps_hint=plan.steps_hint,
                    urgency=plan.urgency.value,
                    conversation_id=plan.conversation_id,
                    status=plan.status.value,
                    current_step_index=plan.current_step_index,
                    error_message=plan.error_message,
                    total_cost_usd=plan.total_cost_usd,
                    version=plan.version,
                    created_at=plan.created_at,
                    updated_at=plan.updated_at,
                    completed_at=plan.completed_at,
                )
            )
            for step in plan.steps:
                s.add(_step_to_row(step))
            try:
                await s.commit()
            except IntegrityError as e:
                raise ConflictError(f"plan {plan.id} already exists") from e
        return plan.model_copy(deep=True)

    async def get(self, plan_id: str) -> Optional[Plan]:
        """
        Retrieve a plan by its ID.

        Args:
            plan_id: The plan identifier.

        Returns:
            The Plan domain object if found, otherwise None.
        """
        async with self.session_factory() as s:
            row = await s.get(PlanRow, plan_id)
            if row is None:
                return None
            result = await s.execute(
                select(PlanStepRow).where(PlanStepRow.plan_id == plan_id).order_by(PlanStepRow.index.asc())
            )
            return _row_to_plan(row, result.scalars().all())

    async def list(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[PlanStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Plan]:
        """
        List plans newest-first, optionally filtered by owner and status.

        Args:
            owner_id: Optional owner filter.
            status: Optional status filter.
            limit: Max number of records to return.
            offset: Pagination offset.

        Returns:
            A list of Plan objects.
        """
        async with self.session_factory() as s:
            stmt = select(PlanRow)
            if owner_id:
                stmt = stmt.where(PlanRow.owner_id == owner_id)
            if status is not None:
                stmt = stmt.where(PlanRow.status == PlanStatus(status).value)
            stmt = stmt.order_by(PlanRow.created_at.desc(), PlanRow.id.desc()).offset(offset).limit(limit)
            rows = (await s.execute(stmt)).scalars().all()
            if not rows:
                return []

            step_rows = (
                await s.execute(select(PlanStepRow).where(PlanStepRow.plan_id.in_([r.id for r in rows])))
            ).scalars().all()
            by_plan: Dict[str, List[PlanStepRow]] = {}
            for step_row in step_rows:
                by_plan.setdefault(step_row.plan_id, []).append(step_row)
            return [_row_to_plan(row, by_plan.get(row.id, [])) for row in rows]

    async def save(self, plan: Plan, *, expected_version: int) -> Plan:
        """
        Write the plan and its steps if the stored version still matches.

        Args:
            plan: The working copy to persist.
            expected_version: The version the caller read.

        Returns:
            The stored plan with its new version.
        """
        async with self.session_factory() as s:
            row = await s.get(PlanRow, plan.id)
            if row is None:
                raise PlanNotFoundError(plan.id)
            if row.version != expected_version:
                raise ConflictError(
                    f"plan {plan.id} was modified concurrently (expected version {expected_version}, found {row.version})"
                )
            new_version = expected_version + 1
            updated_at = max(_utc_now(), _as_utc(row.updated_at))
            res = await s.execute(
                update(PlanRow)
                .where(PlanRow.id == plan.id, PlanRow.version == expected_version)
                .values(
                    status=plan.status.value,
                    current_step_index=plan.current_step_index,
                    error_message=plan.error_message,
                    total_cost_usd=plan.total_cost_usd,
                    version=new_version,
                    updated_at=updated_at,
                    completed_at=plan.completed_at,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                await s.rollback()
                raise ConflictError(f"plan {plan.id} was modified concurrently")

            step_rows = (
                await s.execute(select(PlanStepRow).where(PlanStepRow.plan_id == plan.id))
            ).scalars().all()
            by_id = {r.id: r for r in step_rows}
            if set(by_id) != {step.id for step in plan.steps}:
                await s.rollback()
                raise ConflictError(f"plan {plan.id} step layout is immutable once created")
            for step in plan.steps:
                step_row = by_id[step.id]
                if step_row.index != step.index:
                    await s.rollback()
                    raise ConflictError(f"plan {plan.id} step order is immutable once created")
                _apply_step(step_row, step)
            await s.commit()

        stored = plan.model_copy(deep=True)
        stored.version = new_version
        stored.updated_at = updated_at
        return stored

    async def compare_and_swap_status(
        self,
        plan_id: str,
        *,
        expected: PlanStatus,
        new: PlanStatus,
        error_message: Optional[str] = None,
    ) -> Plan:
        """
        Move a plan from ``expected`` to ``new`` status atomically.

        Args:
            plan_id: The plan identifier.
            expected: The status the caller read.
            new: The target status.
            error_message: Optional message recorded alongside the transition.
        """
        async with self.session_factory() as s:
            row = await s.get(PlanRow, plan_id)
            if row is None:
                raise PlanNotFoundError(plan_id)
            if row.status != PlanStatus(expected).value:
                raise ConflictError(f"plan {plan_id} is {row.status}, expected {PlanStatus(expected).value}")
            now = max(_utc_now(), _as_utc(row.updated_at))
            values = {"status": PlanStatus(new).value, "version": row.version + 1, "updated_at": now}
            if error_message is not None:
                values["error_message"] = error_message
            if PlanStatus(new) in TERMINAL_PLAN_STATUSES:
                values["completed_at"] = now
            res = await s.execute(
                update(PlanRow)
                .where(PlanRow.id == plan_id, PlanRow.version == row.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                await s.rollback()
                raise ConflictError(f"plan {plan_id} was modified concurrently")
            await s.commit()

        plan = await self.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan


@dataclass(frozen=True)
class SqlPlanEventRepository(PlanEventRepository):
    """SQL implementation of ``PlanEventRepository`` (append-only).

    Events are numbered per plan by ``seq`` and listed in that order, so events
    appended within the same clock tick keep their append order.
    """

    session_factory: async_sessionmaker[AsyncSession]
    max_append_attempts: int = 5

    async def append(self, event: PlanEvent) -> None:
        for attempt in range(1, self.max_append_attempts + 1):
            try:
                await self._insert(event)
                return
            except IntegrityError as e:
                logger.debug(f"Event seq for plan {event.plan_id} was taken (attempt {attempt}): {e}")
        raise ConflictError(f"could not append event to plan {event.plan_id} after {self.max_append_attempts} attempts")

    async def _insert(self, event: PlanEvent) -> None:
        async with self.session_factory() as s:
            last = (
                await s.execute(select(func.max(PlanEventRow.seq)).where(PlanEventRow.plan_id == event.plan_id))
            ).scalar()
            s.add(
                PlanEventRow(
                    id=event.id,
                    plan_id=event.plan_id,
                    seq=(last or 0) + 1,
                    type=event.type.value,
                    step_index=event.step_index,
                    created_at=event.created_at,
                    payload=event.payload,
                )
            )
            await s.commit()

    async def list(self, plan_id: str, limit: int = 500) -> List[PlanEvent]:
        async with self.session_factory() as s:
            stmt = (
                select(PlanEventRow)
                .where(PlanEventRow.plan_id == plan_id)
                .order_by(PlanEventRow.seq.asc())
                .limit(limit)
            )
            rows = (await s.execute(stmt)).scalars().all()
            return [
                PlanEvent(
                    id=row.id,
                    plan_id=row.plan_id,
                    type=PlanEventType(row.type),
                    step_index=row.step_index,
                    created_at=_as_utc(row.created_at),
                    payload=row.payload or {},
                )
                for row in rows
            ]


@dataclass(frozen=True)
class SqlPlanLeaseManager(PlanLockManager):
    """Row-level lease in ``gm_plan_leases``, shared by every process on the database.

    While held, a heartbeat task extends ``expires_at`` every ``ttl_seconds / 3``,
    so a live drive loop keeps its lease however long its steps take. Only a
    lease whose holder stopped renewing it (crashed process) expires and may be
    taken over by the next caller.
    """

    session_factory: async_sessionmaker[AsyncSession]
    ttl_seconds: float = 600.0

    @asynccontextmanager
    async def lease(self, plan_id: str) -> AsyncIterator[None]:
        holder = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
        await self._acquire(plan_id, holder)
        heartbeat = asyncio.create_task(self._keep_alive(plan_id, holder))
        try:
            yield
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            await self._release(plan_id, holder)

    async def _keep_alive(self, plan_id: str, holder: str) -> None:
        interval = self.ttl_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._renew(plan_id, holder)
            except SQLAlchemyError as e:
                logger.warning(f"Renewing lease of plan {plan_id} failed, retrying in {interval:.2f}s: {e}")
                continue
            if not renewed:
                logger.error(f"Lease of plan {plan_id} was lost by {holder}; it is no longer renewed")
                return

    async def _renew(self, plan_id: str, holder: str) -> bool:
        async with self.session_factory() as s:
            res = await s.execute(
                update(PlanLeaseRow)
                .where(PlanLeaseRow.plan_id == plan_id, PlanLeaseRow.holder == holder)
                .values(expires_at=_utc_now() + timedelta(seconds=self.ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            await s.commit()
            return res.rowcount == 1

    async def _acquire(self, plan_id: str, holder: str) -> None:
        async with self.session_factory() as s:
            now = _utc_now()
            expires_at = now + timedelta(seconds=self.ttl_seconds)
            row = await s.get(PlanLeaseRow, plan_id)
            if row is None:
                s.add(PlanLeaseRow(plan_id=plan_id, holder=holder, expires_at=expires_at))
            elif _as_utc(row.expires_at) > now:
                raise ConflictError(f"plan {plan_id} is being driven by {row.holder}")
            else:
                res = await s.execute(
                    update(PlanLeaseRow)
                    .where(PlanLeaseRow.plan_id == plan_id, PlanLeaseRow.holder == row.holder)
                    .values(holder=holder, expires_at=expires_at)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    await s.rollback()
                    raise ConflictError(f"plan {plan_id} lease was taken concurrently")
            try:
                await s.commit()
            except IntegrityError as e:
                raise ConflictError(f"plan {plan_id} lease was taken concurrently") from e

    async def _release(self, plan_id: str, holder: str) -> None:
        async with self.session_factory() as s:
            await s.execute(
                delete(PlanLeaseRow)
                .where(PlanLeaseRow.plan_id == plan_id, PlanLeaseRow.holder == holder)
                .execution_options(synchronize_session=False)
            )
            await s.commit()


@dataclass(frozen=True)
class SqlRepoBundle:
    """Convenience bundle of all SQL repositories for dependency injection."""

    plans: SqlPlanStore
    events: SqlPlanEventRepository
    leases: SqlPlanLeaseManager


def build_sql_repos(
    *, session_factory: async_sessionmaker[AsyncSession], lease_ttl_seconds: float = 600.0
) -> SqlRepoBundle:
    """Build a ``SqlRepoBundle`` from a session factory."""
    return SqlRepoBundle(
        plans=SqlPlanStore(session_factory=session_factory),
        events=SqlPlanEventRepository(session_factory=session_factory),
        leases=SqlPlanLeaseManager(session_factory=session_factory, ttl_seconds=lease_ttl_seconds),
    )
