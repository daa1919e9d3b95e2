from __future__ import annotations

from typing import Any, Dict, List

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import ActionSpec


class StepSpec(BaseSchema):
    description: str = Field(min_length=1)
    action_spec: ActionSpec
    requires_approval_hint: bool = False


def normalize_specs(raw: List[Any]) -> List[StepSpec]:
    """Coerce planner output (models or plain dicts) into ``StepSpec`` objects.

    A flat dict carrying ``category``/``tool``/``args`` at the top level is
    accepted and folded into ``action_spec``.
    """
    out: List[StepSpec] = []
    for item in raw:
        if isinstance(item, StepSpec):
            out.append(item)
            continue
        if not isinstance(item, dict):
            raise ValueError(f"unsupported step specification: {type(item).__name__}")
        data: Dict[str, Any] = dict(item)
        if "action_spec" not in data:
            data["action_spec"] = {
                "category": data.pop("category", None) or "unknown",
                "tool": data.pop("tool", None),
                "args": dict(data.pop("args", None) or {}),
            }
        out.append(StepSpec.model_validate(data))
    return out
