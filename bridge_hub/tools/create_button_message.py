"""createButtonMessage tool - posts a dedicated interactive message.

Buttons get action ids ``{prefix}_action_{i}`` inside an actions block
``actions_{prefix}``; the prefix is ``callbackId`` when given.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from bridge_core import dsl
from bridge_core.schema import ToolContext, ToolResult

from .registry import ToolRegistry
from .rendering import render_message, send_rendered

logger = logging.getLogger(__name__)

TOOL_NAME = "createButtonMessage"
DESCRIPTION = "Send a message with interactive buttons the user can click."
PARAMETERS: dict[str, Any] = {
    "text": {"type": "string", "description": "Message text shown above the buttons"},
    "buttons": {
        "type": ["array", "string", "object"],
        "description": "Buttons as [Label|value|style, ...] or a list of {text, value, style}",
    },
    "color": {"type": "string", "description": "Accent color name or #RRGGBB"},
    "callbackId": {"type": "string", "description": "Optional identifier for this button set"},
}
REQUIRED = ["text", "buttons"]

_CALLBACK_ID_RE = re.compile(r"[^A-Za-z0-9_-]+")


async def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    text = str(payload.get("text") or "").strip()
    buttons = dsl.coerce_buttons(payload.get("buttons"))
    if not text:
        return ToolResult(ok=False, error="missing_text")
    if not buttons:
        return ToolResult(ok=False, error="missing_buttons")
    if not ctx.channel_id:
        return ToolResult(ok=False, error="missing_channel")

    callback_id = _CALLBACK_ID_RE.sub("_", str(payload.get("callbackId") or "")).strip("_")
    if callback_id and ctx.thread.buttons.get(callback_id):
        logger.info("callbackId %s already used in thread; generating a new prefix", callback_id)
        callback_id = ""

    rendered = await render_message(
        ctx,
        text,
        color=payload.get("color"),
        buttons=[{"text": b.label, "value": b.value, "style": b.style, "action_id": b.action_id} for b in buttons],
        button_prefix=callback_id or None,
    )
    for group in rendered.groups:
        group.callback_id = callback_id or None
    data = await send_rendered(ctx, rendered, text)
    data["button_count"] = len(buttons)
    return ToolResult(ok=True, data=data)


def register(registry: ToolRegistry) -> None:
    """Register the createButtonMessage tool with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, True, required=REQUIRED)
