from __future__ import annotations

"""In-memory repository implementations.

Same compare-and-swap semantics as the SQL store, without a database. Used by
the unit tests and handy for local experiments. State lives only in this
process.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from ..errors import ConflictError, PlanNotFoundError
from ..schemas.domain import TERMINAL_PLAN_STATUSES, Plan, PlanEvent, PlanStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryPlanStore:
    def __init__(self) -> None:
        self._plans: Dict[str, Plan] = {}
        self._mutex = asyncio.Lock()

    async def create(self, plan: Plan) -> Plan:
        async with self._mutex:
            if plan.id in self._plans:
                raise ConflictError(f"plan {plan.id} already exists")
            self._plans[plan.id] = plan.model_copy(deep=True)
            return plan.model_copy(deep=True)

    async def get(self, plan_id: str) -> Optional[Plan]:
        async with self._mutex:
            stored = self._plans.get(plan_id)
            return stored.model_copy(deep=True) if stored is not None else None

    async def list(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[PlanStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Plan]:
        async with self._mutex:
            plans = [
                p
                for p in self._plans.values()
                if (not owner_id or p.owner_id == owner_id) and (status is None or p.status == PlanStatus(status))
            ]
        plans.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return [p.model_copy(deep=True) for p in plans[offset : offset + limit]]

    async def save(self, plan: Plan, *, expected_version: int) -> Plan:
        async with self._mutex:
            stored = self._plans.get(plan.id)
            if stored is None:
                raise PlanNotFoundError(plan.id)
            if stored.version != expected_version:
                raise ConflictError(
                    f"plan {plan.id} was modified concurrently (expected version {expected_version}, found {stored.version})"
                )
            if [(s.id, s.index) for s in stored.steps] != [(s.id, s.index) for s in plan.steps]:
                raise ConflictError(f"plan {plan.id} step layout is immutable once created")
            new = plan.model_copy(deep=True)
            new.version = expected_version + 1
            new.updated_at = max(_utc_now(), stored.updated_at)
            self._plans[plan.id] = new
            return new.model_copy(deep=True)

    async def compare_and_swap_status(
        self,
        plan_id: str,
        *,
        expected: PlanStatus,
        new: PlanStatus,
        error_message: Optional[str] = None,
    ) -> Plan:
        async with self._mutex:
            stored = self._plans.get(plan_id)
            if stored is None:
                raise PlanNotFoundError(plan_id)
            if stored.status != PlanStatus(expected):
                raise ConflictError(f"plan {plan_id} is {stored.status.value}, expected {PlanStatus(expected).value}")
            updated = stored.model_copy(deep=True)
            updated.status = PlanStatus(new)
            updated.version = stored.version + 1
            updated.updated_at = max(_utc_now(), stored.updated_at)
            if error_message is not None:
                updated.error_message = error_message
            if updated.status in TERMINAL_PLAN_STATUSES:
                updated.completed_at = updated.updated_at
            self._plans[plan_id] = updated
            return updated.model_copy(deep=True)


class InMemoryPlanEventRepository:
    def __init__(self) -> None:
        self._events: Dict[str, List[PlanEvent]] = defaultdict(list)

    async def append(self, event: PlanEvent) -> None:
        self._events[event.plan_id].append(event.model_copy(deep=True))

    async def list(self, plan_id: str, limit: int = 500) -> List[PlanEvent]:
        return [e.model_copy(deep=True) for e in self._events.get(plan_id, [])[:limit]]


class InProcessPlanLockManager:
    """One ``asyncio.Lock`` per plan id; a busy plan is reported, not waited on."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_held(self, plan_id: str) -> bool:
        lock = self._locks.get(plan_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def lease(self, plan_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(plan_id, asyncio.Lock())
        if lock.locked():
            raise ConflictError(f"plan {plan_id} is already being driven")
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if not lock.locked() and self._locks.get(plan_id) is lock:
                del self._locks[plan_id]
