from __future__ import annotations

"""Convenience factories for wiring the executor.

Small helpers to build the default tool registry, a ``RetryPolicy`` from
settings and a ready-to-use ``PlanService``. Deployments with their own
invoker, planner or persistence pass them in explicitly.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from .approval import ApprovalGate
from .planning import Planner, StructuredPlanner
from .repos import InMemoryPlanEventRepository, InMemoryPlanStore, InProcessPlanLockManager
from .repos.sql import build_sql_repos
from .runtime import RetryPolicy, RunnerDeps
from .schemas.domain import ActionCategory
from .service import PlanService, PlanServiceDeps
from .tools import RegistryToolInvoker, ToolInvoker, ToolRegistry
from .tools.builtin import summarize_handler


def build_default_registry() -> ToolRegistry:
    """Build the default ``ToolRegistry`` with the built-in handlers."""
    reg = ToolRegistry()
    reg.register_category(ActionCategory.summarize, summarize_handler)
    return reg


def build_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.default_max_retries,
        step_timeout_seconds=settings.step_timeout_seconds,
        backoff_base_seconds=settings.retry_backoff_base_seconds,
        backoff_factor=settings.retry_backoff_factor,
        max_backoff_seconds=settings.retry_backoff_max_seconds,
    )


def build_plan_service(
    *,
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    planner: Optional[Planner] = None,
    invoker: Optional[ToolInvoker] = None,
    gate: Optional[ApprovalGate] = None,
    **runner_overrides: Any,
) -> PlanService:
    """
    Construct a ``PlanService``.

    Args:
        settings: Executor settings (retry policy, planner model, lock backend).
        session_factory: When given, plans, events and leases are stored through
            SQLAlchemy; otherwise in memory. ``lock_backend='memory'`` keeps SQL
            storage but locks in-process.
        planner: Planner override; defaults to ``StructuredPlanner``.
        invoker: Tool invoker override; defaults to the registry invoker.
        gate: Approval gate override; defaults to the default policy.
        runner_overrides: Extra ``RunnerDeps`` fields (e.g. ``sleep``).
    """
    if session_factory is not None:
        repos = build_sql_repos(session_factory=session_factory, lease_ttl_seconds=settings.lease_ttl_seconds)
        store, events = repos.plans, repos.events
        locks = InProcessPlanLockManager() if settings.lock_backend == "memory" else repos.leases
    else:
        store, events, locks = InMemoryPlanStore(), InMemoryPlanEventRepository(), InProcessPlanLockManager()

    runner = RunnerDeps(
        store=store,
        events=events,
        gate=gate or ApprovalGate(),
        invoker=invoker or RegistryToolInvoker(build_default_registry()),
        locks=locks,
        retry=build_retry_policy(settings),
        **runner_overrides,
    )
    return PlanService(
        PlanServiceDeps(
            runner=runner,
            planner=planner or StructuredPlanner(model=settings.planner_model),
            cancel_max_attempts=settings.cancel_max_attempts,
        )
    )
