"""
Domain Exception Handler.

Translates ``PlanExecutorError`` subclasses into HTTP responses. Tool errors
never reach this layer; they are folded into plan state by the runtime.
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from plan_executor.core.logging_config import get_logger
from plan_executor.engine.errors import (
    ConflictError,
    ForbiddenError,
    InvalidApprovalActionError,
    PlanExecutorError,
    PlanNotFoundError,
    PlanningFailedError,
)

logger = get_logger(__name__)

STATUS_BY_ERROR = {
    PlanNotFoundError: 404,
    ForbiddenError: 403,
    ConflictError: 409,
    InvalidApprovalActionError: 422,
    PlanningFailedError: 422,
}


def status_for(exc: PlanExecutorError) -> int:
    for error_type, status_code in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


async def plan_executor_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Render an engine error as JSON.

    Args:
        request: The HTTP request that caused the exception
        exc: The engine error that was raised

    Returns:
        JSONResponse with the mapped status code and the error message
    """
    status_code = status_for(exc) if isinstance(exc, PlanExecutorError) else 500
    logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": type(exc).__name__,
        },
    )
