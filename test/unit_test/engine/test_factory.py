from __future__ import annotations

import pytest

from plan_executor.core.config import Settings
from plan_executor.engine.factory import build_default_registry, build_plan_service, build_retry_policy
from plan_executor.engine.repos import InMemoryPlanStore, InProcessPlanLockManager
from plan_executor.engine.repos.sql import SqlPlanLeaseManager, SqlPlanStore, create_engine, create_sessionmaker
from plan_executor.engine.schemas import ActionSpec, PlanStatus, StepStatus


def _settings(**overrides) -> Settings:
    return Settings(**overrides)


def test_build_retry_policy_copies_settings() -> None:
    policy = build_retry_policy(
        _settings(
            PLAN_EXECUTOR_MAX_RETRIES=5,
            PLAN_EXECUTOR_STEP_TIMEOUT_SECONDS=9,
            PLAN_EXECUTOR_RETRY_BACKOFF_BASE_SECONDS=1.5,
            PLAN_EXECUTOR_RETRY_BACKOFF_FACTOR=3,
            PLAN_EXECUTOR_RETRY_BACKOFF_MAX_SECONDS=10,
        )
    )

    assert policy.max_retries == 5
    assert policy.step_timeout_seconds == 9
    assert policy.backoff_base_seconds == 1.5
    assert policy.backoff_factor == 3
    assert policy.max_backoff_seconds == 10


def test_default_registry_handles_summarize_only() -> None:
    reg = build_default_registry()
    assert reg.has(ActionSpec(category="summarize"))
    assert not reg.has(ActionSpec(category="send_email"))


@pytest.mark.asyncio
async def test_default_service_runs_fallback_plan_in_memory() -> None:
    service = build_plan_service(settings=_settings())

    assert isinstance(service.runner._deps.store, InMemoryPlanStore)
    assert isinstance(service.runner._deps.locks, InProcessPlanLockManager)

    plan = await service.create_and_start(
        "Summarize the quarterly notes", owner_id="u1", organization_id="o1", steps_hint="short"
    )

    assert plan.status == PlanStatus.completed
    assert plan.steps[0].status == StepStatus.completed
    assert plan.steps[0].result == {"summary": "Summarize the quarterly notes"}


@pytest.mark.parametrize(
    "lock_backend, expected",
    [
        (None, SqlPlanLeaseManager),
        ("sql", SqlPlanLeaseManager),
        ("memory", InProcessPlanLockManager),
    ],
)
def test_sql_storage_locks_with_leases_unless_told_otherwise(lock_backend, expected) -> None:
    overrides = {"PLAN_EXECUTOR_LEASE_TTL_SECONDS": 30}
    if lock_backend is not None:
        overrides["PLAN_EXECUTOR_LOCK_BACKEND"] = lock_backend
    session_factory = create_sessionmaker(create_engine("sqlite+aiosqlite://"))

    service = build_plan_service(settings=_settings(**overrides), session_factory=session_factory)

    assert isinstance(service.runner._deps.store, SqlPlanStore)
    assert isinstance(service.runner._deps.locks, expected)
    if expected is SqlPlanLeaseManager:
        assert service.runner._deps.locks.ttl_seconds == 30
