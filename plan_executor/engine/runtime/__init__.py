"""Execution runtime for plans.

- ``StepRunner`` executes one step: approval gating, tool invocation under a
  timeout, retry accounting and outcome persistence.
- ``PlanRunner`` is the re-entrant LangGraph drive loop over a plan's steps and
  owns the plan status state machine.

Both work against the interfaces bundled in ``RunnerDeps`` and write every
change back to the store before yielding control.
"""

from .models import RetryPolicy, RunnerDeps, StepOutcome, StepOutcomeKind
from .plan_runner import PlanRunner, plan_summary
from .step_runner import StepRunner

__all__ = [
    "PlanRunner",
    "RetryPolicy",
    "RunnerDeps",
    "StepOutcome",
    "StepOutcomeKind",
    "StepRunner",
    "plan_summary",
]
