"""updateMessage tool - replaces the content of a message the bot sent."""

from __future__ import annotations

import logging
from typing import Any

from bridge_core.schema import ToolContext, ToolResult

from .registry import ToolRegistry
from .rendering import render_message

logger = logging.getLogger(__name__)

TOOL_NAME = "updateMessage"
DESCRIPTION = "Update a message you sent earlier in this thread (identified by messageTs)."
PARAMETERS: dict[str, Any] = {
    "messageTs": {"type": "string", "description": "Timestamp of the message to update"},
    "text": {"type": "string", "description": "New text, optionally using block syntax"},
    "color": {"type": "string", "description": "Accent color name or #RRGGBB"},
    "fields": {"type": ["array", "string", "object"], "description": "Field list of {title, value}"},
    "buttons": {"type": ["array", "string", "object"], "description": "Replacement buttons"},
    "removeButtons": {"type": "boolean", "description": "Whether to drop all buttons from the message"},
}
REQUIRED = ["messageTs"]


async def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    message_ts = str(payload.get("messageTs") or "").strip()
    text = str(payload.get("text") or "").strip()
    if not message_ts:
        return ToolResult(ok=False, error="missing_message_ts")
    if not text and not payload.get("fields"):
        return ToolResult(ok=False, error="missing_content: provide text or fields")
    channel = ctx.channel_id
    if not channel:
        return ToolResult(ok=False, error="missing_channel")

    buttons = None if payload.get("removeButtons") else payload.get("buttons")
    rendered = await render_message(ctx, text, color=payload.get("color"), buttons=buttons, fields=payload.get("fields"))
    await ctx.platform.update_message(
        channel,
        message_ts,
        text=rendered.payload["text"],
        attachments=rendered.payload["attachments"],
        blocks=[],
    )
    for group in rendered.groups:
        group.message_ts = message_ts
        group.channel_id = channel
        group.text = text
        try:
            ctx.thread.buttons.register(group)
        except ValueError as e:
            logger.warning("Button group %s not registered: %s", group.prefix, e)
    return ToolResult(ok=True, data={"ts": message_ts, "channel": channel, "updated": True})


def register(registry: ToolRegistry) -> None:
    """Register the updateMessage tool with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, True, required=REQUIRED)
