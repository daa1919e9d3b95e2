from __future__ import annotations

"""SQLAlchemy ORM models for plan persistence.

Layout
------

- ``gm_plans``: one row per plan. ``version`` backs optimistic concurrency.
- ``gm_plan_steps``: one row per step, joined by ``plan_id`` and ordered by
  ``index``. ``(plan_id, index)`` is unique so ordering can never be ambiguous.
- ``gm_plan_events``: append-only audit timeline. ``seq`` numbers a plan's events
  in append order; ``(plan_id, seq)`` is unique.
- ``gm_plan_leases``: row-level leases that keep one drive loop per plan.

JSON columns use JSONB on Postgres and plain JSON elsewhere.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class PlanRow(Base):
    """Row model for ``gm_plans``."""

    __tablename__ = "gm_plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    organization_id: Mapped[str] = mapped_column(String(128))

    goal: Mapped[str] = mapped_column(Text)
    steps_hint: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    urgency: Mapped[str] = mapped_column(String(16))
    conversation_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(String(32), index=True)
    current_step_index: Mapped[int] = mapped_column(Integer)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_cost_usd: Mapped[float] = mapped_column(Float, default=0.0)

    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PlanStepRow(Base):
    """Row model for ``gm_plan_steps``."""

    __tablename__ = "gm_plan_steps"
    __table_args__ = (UniqueConstraint("plan_id", "index", name="uq_gm_plan_steps_plan_index"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(64), index=True)
    index: Mapped[int] = mapped_column(Integer)

    description: Mapped[str] = mapped_column(Text)
    action_spec: Mapped[Dict[str, Any]] = mapped_column(JsonType)
    requires_approval_hint: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_approval: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    status: Mapped[str] = mapped_column(String(32))
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)
    error: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer)

    decided_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class PlanEventRow(Base):
    """Row model for ``gm_plan_events``."""

    __tablename__ = "gm_plan_events"
    __table_args__ = (UniqueConstraint("plan_id", "seq", name="uq_gm_plan_events_plan_seq"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(64), index=True)
    seq: Mapped[int] = mapped_column(Integer)

    type: Mapped[str] = mapped_column(String(64))
    step_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, default=dict)


class PlanLeaseRow(Base):
    """Row model for ``gm_plan_leases``."""

    __tablename__ = "gm_plan_leases"

    plan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(128))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
