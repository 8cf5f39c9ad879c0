"""getThreadHistory tool - pulls earlier thread messages into context."""

from __future__ import annotations

from typing import Any

from bridge_core.schema import ToolContext, ToolResult
from bridge_hub.history import import_history

from .registry import ToolRegistry

TOOL_NAME = "getThreadHistory"
DESCRIPTION = "Retrieve earlier messages from the current thread when you need more context."
PARAMETERS = {
    "limit": "Maximum number of messages to retrieve (default 20)",
    "includeParent": "Whether to include the thread's parent message",
}

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


async def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    channel = ctx.channel_id
    if not channel:
        return ToolResult(ok=False, error="missing_channel")
    limit = max(1, min(int(payload.get("limit") or DEFAULT_LIMIT), MAX_LIMIT))
    include_parent = payload.get("includeParent", True) is not False

    thread_ts = ctx.thread_ts
    if thread_ts:
        raw = await ctx.platform.fetch_replies(channel, thread_ts)
    else:
        raw = await ctx.platform.fetch_history(channel, limit=limit)

    summary = import_history(
        ctx.thread,
        raw,
        limit=limit,
        include_parent=include_parent,
        bot_user_id=getattr(ctx.platform, "bot_user_id", None),
    )
    return ToolResult(ok=True, data=summary.to_dict())


def register(registry: ToolRegistry) -> None:
    """Register the getThreadHistory tool with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, True)
