from __future__ import annotations

from ..schemas.domain import ActionSpec
from .base import ToolContext, ToolResult


async def summarize_handler(ctx: ToolContext, spec: ActionSpec) -> ToolResult:
    """
    Summarize text content.

    Args:
        ctx: The execution context; prior step results are appended to the text.
        spec: Action spec with ``args.text`` (str) and optional ``args.max_chars`` (int).

    Returns:
        ToolResult:
            - Success: output contains {"summary": "..."}
            - Failure: ``invalid_input`` when there is nothing to summarize
    """
    text = str(spec.args.get("text") or "").strip()
    for prior in ctx.prior_results:
        result = prior.get("result") or {}
        if isinstance(result, dict) and result.get("summary"):
            text = f"{text}\n{result['summary']}"
    if not text:
        return ToolResult.failure("invalid_input", "missing text")
    max_chars = int(spec.args.get("max_chars") or 200)
    return ToolResult.success({"summary": text[:max_chars]})
