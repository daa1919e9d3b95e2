from __future__ import annotations

from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from plan_executor.engine.service import PlanService
from plan_executor.server.main import app
from plan_executor.server.services.deps import get_plan_service


@pytest_asyncio.fixture
async def client(service: PlanService) -> AsyncGenerator[AsyncClient, None]:
    """ASGI client whose plan service is the in-memory test service."""
    app.dependency_overrides[get_plan_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
