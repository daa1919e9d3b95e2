"""Planning components.

The planning subsystem turns ``(goal, hint, urgency)`` into an ordered list of
``StepSpec`` objects. It never executes anything and its approval hints are
advisory only.
"""

from .planner import Planner, StructuredPlanner
from .steps import StepSpec, normalize_specs

__all__ = [
    "Planner",
    "StepSpec",
    "StructuredPlanner",
    "normalize_specs",
]
