"""getUserAvatar tool - looks up a user's profile picture."""

from __future__ import annotations

import re
from typing import Any

from bridge_core.schema import ToolContext, ToolResult

from .registry import ToolRegistry

TOOL_NAME = "getUserAvatar"
DESCRIPTION = "Get the profile picture URL and display name of a Slack user."
PARAMETERS = {
    "userId": "Slack user id, e.g. U123ABC, or a <@U123ABC> mention",
    "size": "Image size in pixels: 24, 32, 48, 72, 192, 512 or 1024 (default 192)",
}
REQUIRED = ["userId"]

VALID_SIZES = (24, 32, 48, 72, 192, 512, 1024)
DEFAULT_SIZE = 192

_MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")


def clamp_size(value: Any) -> int:
    """Nearest supported size; the default when the value is not a number."""
    try:
        size = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SIZE
    return min(VALID_SIZES, key=lambda s: (abs(s - size), s))


async def _handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    raw_id = str(payload.get("userId") or "").strip()
    match = _MENTION_RE.search(raw_id)
    user_id = match.group(1) if match else raw_id.lstrip("@")
    if not user_id:
        return ToolResult(ok=False, error="missing_user_id")
    size = clamp_size(payload.get("size", DEFAULT_SIZE))

    user = await ctx.platform.user_info(user_id)
    profile = user.get("profile") or {}
    url = (
        (profile.get("image_original") if size == 1024 else None)
        or profile.get(f"image_{size}")
        or profile.get("image_72")
    )
    if not url:
        return ToolResult(ok=False, error=f"no_avatar: {user_id}")
    return ToolResult(ok=True, data={
        "userId": user_id,
        "avatarUrl": url,
        "size": size,
        "name": profile.get("display_name") or profile.get("real_name") or user.get("name"),
    })


def register(registry: ToolRegistry) -> None:
    """Register the getUserAvatar tool with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _handler, PARAMETERS, True, required=REQUIRED)
