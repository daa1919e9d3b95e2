"""Repository interfaces and implementations for plan persistence.

Responsibilities
----------------

- ``PlanStore``: plans with their ordered steps, written with optimistic
  concurrency (compare-and-swap on version or status).
- ``PlanEventRepository``: append-only audit timeline.
- ``PlanLockManager``: at most one active drive loop per plan id.

Implementations
---------------

- ``repos.sql``: async SQLAlchemy (Postgres in production, SQLite for tests).
- ``repos.memory``: in-process equivalents with identical semantics.
"""

from .interfaces import PlanEventRepository, PlanLockManager, PlanStore
from .memory import InMemoryPlanEventRepository, InMemoryPlanStore, InProcessPlanLockManager

__all__ = [
    "InMemoryPlanEventRepository",
    "InMemoryPlanStore",
    "InProcessPlanLockManager",
    "PlanEventRepository",
    "PlanLockManager",
    "PlanStore",
]
