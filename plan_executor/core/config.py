"""
Configuration Settings.

This module defines the executor configuration using Pydantic's BaseSettings.
All values are loaded from environment variables and an optional .env file.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Plan executor settings.

    Retry, backoff and timeout values are configuration inputs rather than
    constants; they are copied into a ``RetryPolicy`` when the runtime is wired.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
        populate_by_name=True,
    )

    # =====================================================================
    # Server Configuration
    # =====================================================================
    server_host: str = Field(
        default="0.0.0.0",
        description="HTTP server host address to bind to",
        alias="PLAN_EXECUTOR_SERVER_HOST",
    )
    server_port: int = Field(
        default=8000,
        description="HTTP server port number",
        alias="PLAN_EXECUTOR_SERVER_PORT",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        alias="PLAN_EXECUTOR_LOG_LEVEL",
    )
    log_format: Literal["simple", "detailed", "json"] = Field(
        default="detailed",
        description="Log line format",
        alias="PLAN_EXECUTOR_LOG_FORMAT",
    )
    log_to_file: bool = Field(
        default=False,
        description="Also write logs to plan_executor.log under log_file_dir",
        alias="PLAN_EXECUTOR_LOG_TO_FILE",
    )
    log_file_dir: str = Field(
        default="logs",
        alias="PLAN_EXECUTOR_LOG_FILE_DIR",
    )

    # =====================================================================
    # Persistence
    # =====================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./plan_executor.db",
        description="Async SQLAlchemy URL for the plan store",
        alias="PLAN_EXECUTOR_DATABASE_URL",
    )
    lock_backend: Optional[Literal["memory", "sql"]] = Field(
        default=None,
        description=(
            "Plan lock backend: in-process asyncio locks or SQL row leases. "
            "Unset means SQL leases whenever plans are stored in SQL"
        ),
        alias="PLAN_EXECUTOR_LOCK_BACKEND",
    )
    lease_ttl_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Lifetime of a SQL plan lease; the holder renews it every third of this while driving",
        alias="PLAN_EXECUTOR_LEASE_TTL_SECONDS",
    )

    # =====================================================================
    # Planning
    # =====================================================================
    planner_model: Optional[str] = Field(
        default=None,
        description="pydantic-ai model name used for goal decomposition, e.g. 'openai:gpt-4o'",
        alias="PLAN_EXECUTOR_PLANNER_MODEL",
    )

    # =====================================================================
    # Execution
    # =====================================================================
    default_max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries allowed per step for transient tool errors",
        alias="PLAN_EXECUTOR_MAX_RETRIES",
    )
    step_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Execution budget for a single tool call",
        alias="PLAN_EXECUTOR_STEP_TIMEOUT_SECONDS",
    )
    retry_backoff_base_seconds: float = Field(
        default=0.5,
        ge=0,
        alias="PLAN_EXECUTOR_RETRY_BACKOFF_BASE_SECONDS",
    )
    retry_backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        alias="PLAN_EXECUTOR_RETRY_BACKOFF_FACTOR",
    )
    retry_backoff_max_seconds: float = Field(
        default=30.0,
        ge=0,
        alias="PLAN_EXECUTOR_RETRY_BACKOFF_MAX_SECONDS",
    )
    cancel_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Optimistic re-read rounds a cancel performs before reporting a conflict",
        alias="PLAN_EXECUTOR_CANCEL_MAX_ATTEMPTS",
    )


settings = Settings()
