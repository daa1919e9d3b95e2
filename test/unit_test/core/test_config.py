from __future__ import annotations

import pytest
from pydantic import ValidationError

from plan_executor.core.config import Settings


def test_defaults() -> None:
    s = Settings()
    assert s.database_url.startswith("sqlite+aiosqlite://")
    assert s.lock_backend is None
    assert s.default_max_retries == 3
    assert s.step_timeout_seconds == 120
    assert s.planner_model is None
    assert s.cancel_max_attempts == 3
    assert s.log_format == "detailed"
    assert s.log_to_file is False


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLAN_EXECUTOR_MAX_RETRIES", "7")
    monkeypatch.setenv("PLAN_EXECUTOR_LOCK_BACKEND", "sql")
    monkeypatch.setenv("PLAN_EXECUTOR_DATABASE_URL", "postgresql://db/plans")

    s = Settings()

    assert s.default_max_retries == 7
    assert s.lock_backend == "sql"
    assert s.database_url == "postgresql://db/plans"


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLAN_EXECUTOR_LOCK_BACKEND", "redis")
    with pytest.raises(ValidationError):
        Settings()
