"""removeReaction tool - removes the bot's emoji reactions from a message."""

from __future__ import annotations

from typing import Any

from bridge_core.schema import ToolContext, ToolResult

from .add_reaction import PARAMETERS, REQUIRED, apply_reactions
from .registry import ToolRegistry

TOOL_NAME = "removeReaction"
DESCRIPTION = "Remove emoji reactions you added to a message (defaults to the triggering message)."


async def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    return await apply_reactions(ctx, payload, remove=True)


def register(registry: ToolRegistry) -> None:
    """Register the removeReaction tool with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, True, required=REQUIRED)
