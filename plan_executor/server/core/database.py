"""
Database Connection and Session Management.

This module sets up the asynchronous SQLAlchemy engine and session factory
used by the server's plan service.
"""

from plan_executor.core.config import settings
from plan_executor.engine.repos.sql import create_all, create_engine, create_sessionmaker

"""
engine:
    The global SQLAlchemy AsyncEngine instance, built from
    ``PLAN_EXECUTOR_DATABASE_URL``.
"""
engine = create_engine(settings.database_url)

"""
async_session_maker:
    A global factory for creating new AsyncSession instances.
"""
async_session_maker = create_sessionmaker(engine)


async def init_db() -> None:
    """
    Initialize the database.

    Creates the plan tables if they do not exist. Production deployments run
    the Alembic migrations instead.
    """
    await create_all(engine)
