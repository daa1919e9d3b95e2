"""Approval gate: which steps need human sign-off and what counts as a decision."""

from .gate import ApprovalGate
from .models import DEFAULT_GATED_CATEGORIES, ApprovalDecisionCheck, ApprovalPolicy

__all__ = [
    "ApprovalDecisionCheck",
    "ApprovalGate",
    "ApprovalPolicy",
    "DEFAULT_GATED_CATEGORIES",
]
