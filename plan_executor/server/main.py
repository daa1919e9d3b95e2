"""
Main Application Entry Point.

This module initializes the FastAPI application, registers exception handlers
and includes all API routers.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from plan_executor.core.config import settings
from plan_executor.core.logging_config import get_logger, setup_logging

from .api.v1 import health, plans
from .core import constant
from .core.database import init_db
from .exception_handlers import setup_exception_handlers
from .services.deps import get_plan_service

setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events.

    On startup the plan tables are created and every plan left ``pending`` or
    ``running`` by a previous process is driven forward again.
    """
    logger.info("Starting up Plan Executor Server...")
    await init_db()
    logger.info("Database initialized successfully")
    recovered = await get_plan_service().recover()
    logger.info(f"Startup recovery drove {len(recovered)} plan(s)")

    yield

    logger.info("Shutting down Plan Executor Server...")


app = FastAPI(
    title=constant.PROJECT_NAME,
    description="""
    Plan Executor API

    Decompose goals into steps, execute them against tools, and pause for
    human approval before consequential actions.
    """,
    version="0.1.0",
    openapi_url=f"{constant.API_V1_STR}/openapi.json",
    docs_url=f"{constant.API_V1_STR}/docs",
    lifespan=lifespan,
)

setup_exception_handlers(app)

app.include_router(health.router, tags=["health"])
app.include_router(plans.router, prefix=f"{constant.API_V1_STR}/plans", tags=["plans"])


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.server_host, port=settings.server_port)
