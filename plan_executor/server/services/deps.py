"""
Plan Service Dependency.

Provides a singleton instance of the PlanService for API endpoints.
"""

from typing import Annotated, Optional

from fastapi import Depends

from plan_executor.core.config import settings
from plan_executor.core.logging_config import get_logger
from plan_executor.engine.factory import build_plan_service
from plan_executor.engine.service import PlanService
from plan_executor.server.core.database import async_session_maker

logger = get_logger(__name__)

_plan_service: Optional[PlanService] = None


def get_plan_service() -> PlanService:
    global _plan_service
    if _plan_service is None:
        logger.info(f"Building plan service (lock backend: {settings.lock_backend or 'sql'})")
        _plan_service = build_plan_service(settings=settings, session_factory=async_session_maker)
    return _plan_service


PlanServiceDep = Annotated[PlanService, Depends(get_plan_service)]
