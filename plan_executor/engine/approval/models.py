from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import ActionCategory, ApprovalAction

DEFAULT_GATED_CATEGORIES = frozenset(
    {
        ActionCategory.send_message,
        ActionCategory.send_email,
        ActionCategory.make_payment,
        ActionCategory.delete_data,
        ActionCategory.contact_third_party,
        ActionCategory.unknown,
    }
)


class ApprovalPolicy(BaseSchema):
    """
    Configuration for the human-in-the-loop approval gate.

    ``unknown`` is always gated, whether or not it appears in ``gated_categories``.
    """

    gated_categories: set[ActionCategory] = Field(
        default_factory=lambda: set(DEFAULT_GATED_CATEGORIES),
        description="Action categories that always require human sign-off.",
    )
    gated_tools: set[str] = Field(
        default_factory=set,
        description="Logical tool names that require sign-off regardless of category (e.g. 'stripe.refund').",
    )
    honor_planner_hints: bool = Field(
        default=True,
        description="If set, a planner hint can add a gate to an otherwise ungated step. Hints never remove one.",
    )


@dataclass(frozen=True)
class ApprovalDecisionCheck:
    """
    Result of validating a raw decision token.

    Attributes:
        valid: Whether the token was one of the accepted literals.
        action: The parsed action when valid.
    """

    valid: bool
    action: Optional[ApprovalAction]
