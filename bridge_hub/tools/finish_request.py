"""finishRequest tool - ends the current turn."""

from __future__ import annotations

from typing import Any

from bridge_core.schema import FINISH_TOOL, ToolContext, ToolResult

from .registry import ToolRegistry

TOOL_NAME = FINISH_TOOL
DESCRIPTION = "End your turn after you have fully responded to the user's request."
PARAMETERS = {
    "summary": "Optional short summary of what was done",
}


def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    summary = str(payload.get("summary") or "Request completed")
    ctx.thread.set_metadata("lastFinishSummary", summary)
    return ToolResult(ok=True, data={"request_completed": True, "summary": summary})


def register(registry: ToolRegistry) -> None:
    """Register the finishRequest tool with the registry."""
    # Never cached: every turn must be able to finish.
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, cache_results=False)
