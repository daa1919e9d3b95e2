from __future__ import annotations

"""Repository interface contracts.

The runtime depends on these Protocols instead of concrete persistence
implementations.

Contract guidelines
-------------------

- All methods are async.
- The plan store is the single source of truth. Every write is a
  compare-and-swap: ``save`` compares the stored ``version`` with the version
  the caller read, ``compare_and_swap_status`` compares the stored status. A
  mismatch raises ``ConflictError`` and leaves the record untouched.
- Objects returned by a store are copies; mutating them has no effect until
  they are saved.
- The event repository is append-only.
"""

from typing import AsyncContextManager, Optional, Protocol

from ..schemas.domain import Plan, PlanEvent, PlanStatus


class PlanStore(Protocol):
    """Persist plans together with their ordered steps."""

    async def create(self, plan: Plan) -> Plan:
        """
        Insert a new plan and all of its steps.

        Args:
            plan: The plan to persist. Its ``version`` must be 0.

        Returns:
            The stored plan.

        Raises:
            ConflictError: If a plan with the same id already exists.
        """
        ...

    async def get(self, plan_id: str) -> Optional[Plan]:
        """
        Retrieve a plan by its ID.

        Args:
            plan_id: The plan identifier.

        Returns:
            The Plan with steps ordered by index, else None.
        """
        ...

    async def list(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[PlanStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Plan]:
        """
        List plans newest-first.

        Args:
            owner_id: Optional owner filter.
            status: Optional status filter.
            limit: Max number of records to return.
            offset: Pagination offset.

        Returns:
            A list of Plan objects ordered by ``created_at`` descending.
        """
        ...

    async def save(self, plan: Plan, *, expected_version: int) -> Plan:
        """
        Write the full plan record (plan fields and step fields).

        Args:
            plan: The working copy to persist.
            expected_version: The version the caller read.

        Returns:
            The stored plan with its version incremented.

        Raises:
            PlanNotFoundError: If the plan does not exist.
            ConflictError: If the stored version differs from ``expected_version``.
        """
        ...

    async def compare_and_swap_status(
        self,
        plan_id: str,
        *,
        expected: PlanStatus,
        new: PlanStatus,
        error_message: Optional[str] = None,
    ) -> Plan:
        """
        Atomically move a plan from ``expected`` to ``new`` status.

        Raises:
            PlanNotFoundError: If the plan does not exist.
            ConflictError: If the stored status is not ``expected``.
        """
        ...


class PlanEventRepository(Protocol):
    """Append-only store for the plan audit timeline."""

    async def append(self, event: PlanEvent) -> None:
        """
        Append a new event to the plan's timeline.

        Args:
            event: The event to persist.
        """
        ...

    async def list(self, plan_id: str, limit: int = 500) -> list[PlanEvent]:
        """
        List events for a plan, oldest first.

        Args:
            plan_id: The plan identifier.
            limit: Max number of events to return.
        """
        ...


class PlanLockManager(Protocol):
    """Guarantee at most one active drive loop per plan id."""

    def lease(self, plan_id: str) -> AsyncContextManager[None]:
        """
        Hold the plan for the duration of the ``async with`` block.

        Raises:
            ConflictError: If another holder currently owns the plan.
        """
        ...
