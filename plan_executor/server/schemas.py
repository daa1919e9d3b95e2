"""
API Schemas.

Pydantic models used for API request bodies. Responses reuse the engine's
domain models (``Plan``, ``PlanEvent``) directly.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from plan_executor.engine.schemas.domain import Urgency


class PlanCreate(BaseModel):
    """
    Schema for creating and starting a plan.

    Owner and organization ids are opaque to the executor; the caller is
    responsible for authenticating them.
    """

    goal: str = Field(
        ...,
        min_length=1,
        description="Free-text goal to decompose into steps.",
        examples=["Send a thank-you email to Jane"],
    )
    owner_id: str = Field(..., min_length=1, description="The user who owns the plan and decides approvals.")
    organization_id: str = Field(..., min_length=1, description="Tenant the plan belongs to.")
    steps_hint: Optional[str] = Field(default=None, description="Optional hint about the expected steps.")
    urgency: Urgency = Field(default=Urgency.normal, description="Urgency of the request.")
    conversation_id: Optional[str] = Field(default=None, description="Optional correlation handle.")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "goal": "Send a thank-you email to Jane",
                "owner_id": "user-123",
                "organization_id": "acme-corp",
                "urgency": "normal",
            }
        }
    )


class ActorRequest(BaseModel):
    """Identifies the user acting on a plan (approve, reject, cancel)."""

    actor_id: str = Field(..., min_length=1, description="The acting user; must be the plan owner.")


class DecisionRequest(ActorRequest):
    """Raw approval decision; only ``approve`` and ``reject`` are accepted."""

    action: str = Field(..., description="'approve' or 'reject' (case-insensitive).", examples=["approve"])
