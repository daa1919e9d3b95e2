from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from plan_executor.engine.approval import ApprovalGate
from plan_executor.engine.repos import InMemoryPlanEventRepository, InMemoryPlanStore, InProcessPlanLockManager
from plan_executor.engine.runtime import RetryPolicy, RunnerDeps
from plan_executor.engine.schemas import (
    ACTIVE_STEP_STATUSES,
    ActionSpec,
    Plan,
    PlanStatus,
    StepStatus,
    Urgency,
)
from plan_executor.engine.service import PlanService, PlanServiceDeps
from plan_executor.engine.tools import ToolContext, ToolResult

# Load dotenv files early so settings-based tests see test/.env overrides
try:  # pragma: no cover
    from dotenv import load_dotenv

    TEST_ROOT = Path(__file__).resolve().parent
    load_dotenv(TEST_ROOT / ".env", override=False)
except ImportError:
    pass


class ScriptedPlanner:
    """Planner returning a fixed list of step specs (plain dicts or ``StepSpec``)."""

    def __init__(self, steps: Optional[List[Any]] = None, *, error: Optional[Exception] = None) -> None:
        self.steps: List[Any] = list(steps or [])
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def decompose(self, goal: str, hint: Optional[str], urgency: Urgency) -> List[Any]:
        self.calls.append({"goal": goal, "hint": hint, "urgency": urgency})
        if self.error is not None:
            raise self.error
        return list(self.steps)


class ScriptedInvoker:
    """Tool invoker whose outcomes are scripted per step index.

    - Unscripted steps succeed with ``{"step": index}``.
    - A script is a list of ``ToolResult`` objects or exceptions; the last entry repeats.
    - While ``hold`` is assigned, calls wait for it to be set; ``hold_at`` does the same for one step.
    """

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.aborted: List[str] = []
        self.started = asyncio.Event()
        self.hold: Optional[asyncio.Event] = None
        self._scripts: Dict[int, List[Any]] = {}
        self._holds: Dict[int, asyncio.Event] = {}

    def script(self, step_index: int, *outcomes: Any) -> None:
        self._scripts[step_index] = list(outcomes)

    def hold_at(self, step_index: int) -> asyncio.Event:
        """Block calls for one step until the returned event is set."""
        self._holds[step_index] = asyncio.Event()
        return self._holds[step_index]

    def calls_for(self, step_index: int) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["context"].step_index == step_index]

    async def invoke(
        self,
        action_spec: ActionSpec,
        *,
        idempotency_token: str,
        timeout: float,
        context: ToolContext,
    ) -> ToolResult:
        self.calls.append(
            {"spec": action_spec, "token": idempotency_token, "timeout": timeout, "context": context}
        )
        self.started.set()
        if self.hold is not None:
            await self.hold.wait()
        step_hold = self._holds.get(context.step_index)
        if step_hold is not None:
            await step_hold.wait()
        outcomes = self._scripts.get(context.step_index)
        if not outcomes:
            return ToolResult.success({"step": context.step_index})
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def abort(self, idempotency_token: str) -> None:
        self.aborted.append(idempotency_token)


def step_spec(category: str, description: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    return {"description": description or f"do {category}", "category": category, **extra}


def check_plan_invariants(plan: Plan) -> None:
    """Assert the persisted-snapshot invariants of a plan."""
    active = [s for s in plan.steps if s.status in (StepStatus.running, StepStatus.waiting_approval)]
    assert len(active) <= 1
    if plan.status == PlanStatus.paused:
        assert len(active) == 1 and active[0].status == StepStatus.waiting_approval
    if plan.is_terminal:
        assert not [s for s in plan.steps if s.status in ACTIVE_STEP_STATUSES]
    if plan.status in (PlanStatus.completed, PlanStatus.failed):
        assert plan.current_step_index == len(plan.steps)
    else:
        assert plan.current_step_index < len(plan.steps)

    if plan.status == PlanStatus.failed:
        failed = [s.index for s in plan.steps if s.status == StepStatus.failed]
        assert len(failed) == 1
        frontier = failed[0]
    else:
        frontier = plan.current_step_index
    for s in plan.steps[:frontier]:
        assert s.status == StepStatus.completed
    for s in plan.steps[frontier + 1 :]:
        assert s.status == StepStatus.pending


@pytest.fixture
def store() -> InMemoryPlanStore:
    return InMemoryPlanStore()


@pytest.fixture
def events() -> InMemoryPlanEventRepository:
    return InMemoryPlanEventRepository()


@pytest.fixture
def locks() -> InProcessPlanLockManager:
    return InProcessPlanLockManager()


@pytest.fixture
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture
def planner() -> ScriptedPlanner:
    return ScriptedPlanner()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, step_timeout_seconds=5.0, backoff_base_seconds=0.5, backoff_factor=2.0)


@pytest.fixture
def runner_deps(store, events, locks, invoker, sleeps, retry_policy) -> RunnerDeps:
    async def _record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return RunnerDeps(
        store=store,
        events=events,
        gate=ApprovalGate(),
        invoker=invoker,
        locks=locks,
        retry=retry_policy,
        sleep=_record_sleep,
    )


@pytest.fixture
def service(runner_deps: RunnerDeps, planner: ScriptedPlanner) -> PlanService:
    return PlanService(PlanServiceDeps(runner=runner_deps, planner=planner))


@pytest.fixture
def invariants() -> Callable[[Plan], None]:
    return check_plan_invariants


@pytest.fixture
def spec() -> Callable[..., Dict[str, Any]]:
    return step_spec


@pytest.fixture(autouse=True)
def _global_offline_http_guard(monkeypatch: pytest.MonkeyPatch):
    allowed_prefixes: Iterable[str] = (
        "http://test",
        "http://localhost",
        "http://127.0.0.1",
        "/",
    )

    orig_sync = httpx._client.Client.request
    orig_async = httpx._client.AsyncClient.request

    def _is_allowed(url_str: str) -> bool:
        return any(url_str.startswith(p) for p in allowed_prefixes)

    def offline_sync(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return orig_sync(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard: {url_str}")

    async def offline_async(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return await orig_async(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard (async): {url_str}")

    monkeypatch.setattr(httpx._client.Client, "request", offline_sync, raising=True)
    monkeypatch.setattr(httpx._client.AsyncClient, "request", offline_async, raising=True)
