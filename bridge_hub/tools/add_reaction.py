"""addReaction tool - reacts to a message with one or more emoji."""

from __future__ import annotations

import logging
from typing import Any

from bridge_core.errors import PlatformAPIError
from bridge_core.schema import ToolContext, ToolResult

from .registry import ToolRegistry

logger = logging.getLogger(__name__)

TOOL_NAME = "addReaction"
DESCRIPTION = "Add emoji reactions to a message (defaults to the message that triggered this request)."
PARAMETERS: dict[str, Any] = {
    "emoji": {"type": ["string", "array"], "description": "Emoji name or list of names, without colons"},
    "messageTs": {"type": "string", "description": "Timestamp of the message to react to"},
}
REQUIRED = ["emoji"]

EMOJI_ALIASES = {
    "thumbsup": "thumbsup",
    "+1": "thumbsup",
    "thumbsdown": "thumbsdown",
    "-1": "thumbsdown",
    "check": "white_check_mark",
    "checkmark": "white_check_mark",
    "thinking": "thinking_face",
    "eyes": "eyes",
    "heart": "heart",
    "smile": "smile",
    "x": "x",
    "loading": "loading",
}


def normalize_emoji(value: Any) -> list[str]:
    """Names without colons, aliases resolved, duplicates removed."""
    items = value if isinstance(value, list) else str(value or "").replace(",", " ").split()
    names: list[str] = []
    for item in items:
        name = str(item).strip().strip(":").lower()
        name = EMOJI_ALIASES.get(name, name)
        if name and name not in names:
            names.append(name)
    return names


async def apply_reactions(ctx: ToolContext, payload: dict[str, Any], *, remove: bool) -> ToolResult:
    names = normalize_emoji(payload.get("emoji"))
    if not names:
        return ToolResult(ok=False, error="missing_emoji")
    channel = ctx.channel_id
    message_ts = str(payload.get("messageTs") or "").strip() or ctx.trigger_ts or ctx.thread_ts
    if not channel or not message_ts:
        return ToolResult(ok=False, error="missing_target_message")

    call = ctx.platform.remove_reaction if remove else ctx.platform.add_reaction
    benign = "no_reaction" if remove else "already_reacted"
    done: list[str] = []
    for name in names:
        try:
            await call(channel, message_ts, name)
        except PlatformAPIError as e:
            if e.error != benign:
                raise
            logger.debug("Reaction %s on %s: %s", name, message_ts, e.error)
        done.append(name)
    return ToolResult(ok=True, data={"emoji": done, "messageTs": message_ts})


async def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    return await apply_reactions(ctx, payload, remove=False)


def register(registry: ToolRegistry) -> None:
    """Register the addReaction tool with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, True, required=REQUIRED)
