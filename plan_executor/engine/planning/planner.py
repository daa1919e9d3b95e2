from __future__ import annotations

"""Goal decomposition.

The engine consumes any object that satisfies the ``Planner`` protocol. The
default ``StructuredPlanner`` asks a pydantic-ai model for a list of
``StepSpec`` objects.

The planner is intentionally constrained:

- It does not execute tools.
- It does not decide approvals; ``requires_approval_hint`` is advisory and the
  approval gate re-derives the authoritative flag.
- It must return at least one step; an empty plan is a planning failure.
"""

import logging
from typing import Any, List, Optional, Protocol

from pydantic_ai import Agent

from ..errors import PlanningFailedError
from ..schemas.domain import ActionCategory, ActionSpec, Urgency
from .steps import StepSpec, normalize_specs

logger = logging.getLogger(__name__)


class Planner(Protocol):
    """Turn a goal into an ordered list of step specifications."""

    async def decompose(self, goal: str, hint: Optional[str], urgency: Urgency) -> List[StepSpec]:
        """
        Decompose a goal.

        Args:
            goal: Free-text goal.
            hint: Optional free-text description of the expected steps.
            urgency: Urgency of the request.

        Returns:
            Ordered step specifications. Insertion order is execution order.
        """
        ...


_SYSTEM_PROMPT = (
    "You are a careful planner for an autonomous assistant. "
    "Break the user's goal into a short, strictly sequential list of steps. "
    "Each step has a description and an action_spec with a category, an optional tool name and args. "
    "Set requires_approval_hint for anything that contacts people, spends money or deletes data."
)


class StructuredPlanner:
    """Planner backed by pydantic-ai.

    - ``model=None``: deterministic fallback that emits a single ``summarize``
      step over the goal. Useful for tests and deployments without an LLM.
    - ``model!=None``: runs a pydantic-ai ``Agent`` with ``output_type=List[StepSpec]``.
    """

    def __init__(self, *, model: Any | None = None, categories: Optional[List[ActionCategory]] = None) -> None:
        self._model = model
        self._categories = categories or [c for c in ActionCategory if c != ActionCategory.unknown]

    async def decompose(self, goal: str, hint: Optional[str], urgency: Urgency) -> List[StepSpec]:
        if not goal or not goal.strip():
            raise PlanningFailedError("goal must not be empty")

        if self._model is None:
            args = {"text": goal}
            if hint:
                args["hint"] = hint
            return [
                StepSpec(
                    description=f"Summarize: {goal}",
                    action_spec=ActionSpec(category=ActionCategory.summarize.value, args=args),
                )
            ]

        agent: Agent = Agent(self._model, output_type=List[StepSpec], system_prompt=_SYSTEM_PROMPT)
        prompt = (
            "Create a plan for this goal.\n\n"
            f"goal={goal}\n"
            f"steps_hint={hint or ''}\n"
            f"urgency={Urgency(urgency).value}\n"
            f"categories={', '.join(c.value for c in self._categories)}\n"
        )
        try:
            result = await agent.run(prompt)
            steps = normalize_specs(list(result.output or []))
        except PlanningFailedError:
            raise
        except Exception as e:
            logger.warning(f"Planner model failed for goal {goal!r}: {e}")
            raise PlanningFailedError(str(e)) from e

        if not steps:
            raise PlanningFailedError("planner returned no steps")
        logger.debug(f"Planner produced {len(steps)} step(s)")
        return steps
