"""postMessage tool - sends a rich message to the current thread.

The text may use the block DSL (``#header: ...``, ``#buttons: [...]``).
Structured ``buttons``, ``fields`` and ``images`` parameters are appended
after the DSL blocks.
"""

from __future__ import annotations

import logging
from typing import Any

from bridge_core.json_repair import loads_lenient
from bridge_core.schema import FINISH_TOOL, ToolContext, ToolResult, strip_namespace

from .registry import ToolRegistry
from .rendering import render_message, send_rendered

logger = logging.getLogger(__name__)

TOOL_NAME = "postMessage"
DESCRIPTION = (
    "Send a message to the user in the current Slack thread. Use once per request, "
    "then call finishRequest. The text may use #header:/#section:/#buttons: block syntax."
)
PARAMETERS: dict[str, Any] = {
    "text": {"type": "string", "description": "Message text, optionally using block syntax"},
    "color": {"type": "string", "description": "Accent color name or #RRGGBB"},
    "buttons": {
        "type": ["array", "string", "object"],
        "description": "Buttons as [Label|value|style, ...] or a list of {text, value, style}",
    },
    "fields": {"type": ["array", "string", "object"], "description": "Field list of {title, value}"},
    "images": {"type": ["array", "string", "object"], "description": "Image URLs or {url, alt_text}"},
    "threadTs": {"type": "string", "description": "Thread to reply in; defaults to the current thread"},
}
REQUIRED = ["text"]


def embedded_finish(text: str) -> dict[str, Any] | None:
    """Detect a finishRequest call the model put in the message text."""
    stripped = text.strip()
    if not stripped.startswith(("{", "```")) or FINISH_TOOL not in stripped:
        return None
    try:
        obj = loads_lenient(stripped)
    except ValueError:
        return None
    if isinstance(obj, dict) and strip_namespace(str(obj.get("tool") or "")) == FINISH_TOOL:
        params = obj.get("parameters")
        return params if isinstance(params, dict) else {}
    return None


async def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Execute the postMessage tool.

    Payload:
        text: message text (DSL allowed)
        color: accent color for blocks without their own color
        buttons / fields / images: structured extras
        threadTs: override the reply thread
    """
    text = str(payload.get("text") or "").strip()
    if not text:
        return ToolResult(ok=False, error="missing_text")

    finish_params = embedded_finish(text)
    if finish_params is not None:
        logger.info("postMessage text was a finishRequest call; forwarding")
        return ToolResult(ok=True, data={"finished": True, "message_sent": False, "summary": finish_params.get("summary")})

    if not ctx.channel_id:
        return ToolResult(ok=False, error="missing_channel")

    rendered = await render_message(
        ctx,
        text,
        color=payload.get("color"),
        buttons=payload.get("buttons"),
        fields=payload.get("fields"),
        images=payload.get("images"),
    )
    if not rendered.blocks:
        return ToolResult(ok=False, error="empty_message: no renderable blocks")
    data = await send_rendered(ctx, rendered, text, thread_ts=payload.get("threadTs"))
    return ToolResult(ok=True, data=data)


def register(registry: ToolRegistry) -> None:
    """Register the postMessage tool with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, True, required=REQUIRED)
