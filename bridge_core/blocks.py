"""Rich-message assembler: render blocks -> Slack attachments payload.

Pure transformation. Each distinct accent color becomes one attachment
(container), blocks sharing a color are grouped into it in first-seen
order. The caller performs the network call.
"""
from __future__ import annotations

import logging
import re
from typing import Any

from .schema import BlockKind, ButtonSpec, RenderBlock

logger = logging.getLogger(__name__)

DEFAULT_ACCENT_COLOR = "#842BFF"
DEFAULT_NAMED_FALLBACK = "#0078D7"
FALLBACK_TEXT = " "
DEFAULT_NOTIFICATION = "Message from the bot"
CONFIRMATION_COLOR = "#2EB67D"

MAX_SECTION_TEXT = 3000
MAX_HEADER_TEXT = 150
MAX_NOTIFICATION_TEXT = 150
MAX_BUTTON_LABEL = 75
MAX_FIELDS = 10
MAX_CONTEXT_ELEMENTS = 10
MAX_AVATARS = 3

NAMED_COLORS: dict[str, str] = {
    "good": "#2EB67D",
    "warning": "#ECB22E",
    "danger": "#E01E5A",
    "blue": "#0078D7",
    "green": "#2EB67D",
    "red": "#E01E5A",
    "orange": "#F2952F",
    "purple": "#6B46C1",
    "cyan": "#00BCD4",
    "teal": "#008080",
    "magenta": "#E91E63",
    "yellow": "#FFEB3B",
    "pink": "#FF69B4",
    "brown": "#795548",
    "black": "#000000",
    "white": "#FFFFFF",
    "gray": "#9E9E9E",
    "grey": "#9E9E9E",
}

_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")


def normalize_color(color: str | None) -> str:
    """Map named colors and bare hex to ``#RRGGBB``; unknown values get the default."""
    if not color:
        return DEFAULT_ACCENT_COLOR
    value = str(color).strip()
    named = NAMED_COLORS.get(value.lower())
    if named:
        return named
    match = _HEX_RE.match(value)
    if match:
        return f"#{match.group(1).upper()}"
    logger.debug("Unknown color %r, using default", value)
    return DEFAULT_NAMED_FALLBACK


def action_id_for(group_id: str, index: int, button: ButtonSpec) -> str:
    return button.action_id or f"{group_id}_action_{index}"


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _mrkdwn(text: str) -> dict[str, Any]:
    return {"type": "mrkdwn", "text": _truncate(text, MAX_SECTION_TEXT)}


def _image_element(url: str, alt_text: str) -> dict[str, Any]:
    return {"type": "image", "image_url": url, "alt_text": alt_text or "Image"}


def _render_button(group_id: str, index: int, button: ButtonSpec) -> dict[str, Any]:
    element: dict[str, Any] = {
        "type": "button",
        "text": {"type": "plain_text", "text": _truncate(button.label, MAX_BUTTON_LABEL), "emoji": True},
        "action_id": action_id_for(group_id, index, button),
    }
    if button.is_link:
        element["url"] = button.value
    else:
        element["value"] = button.value
    if button.style:
        element["style"] = button.style
    return element


def render_block(
    block: RenderBlock,
    *,
    index: int = 0,
    user_avatars: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Render one block into its Slack Block Kit form."""
    kind = block.kind

    if kind == BlockKind.HEADER:
        text = " ".join(block.text.split())
        return {"type": "header", "text": {"type": "plain_text", "text": _truncate(text, MAX_HEADER_TEXT), "emoji": True}}

    if kind == BlockKind.SECTION:
        return {"type": "section", "text": _mrkdwn(block.text)}

    if kind == BlockKind.CONTEXT:
        return {"type": "context", "elements": [_mrkdwn(block.text)]}

    if kind == BlockKind.DIVIDER:
        return {"type": "divider"}

    if kind == BlockKind.IMAGE:
        image = block.images[0]
        return {"type": "image", **_image_element(image.url, image.alt_text)}

    if kind == BlockKind.SECTION_WITH_IMAGE:
        image = block.images[0]
        return {
            "type": "section",
            "text": _mrkdwn(block.text or " "),
            "accessory": _image_element(image.url, image.alt_text),
        }

    if kind == BlockKind.CONTEXT_WITH_IMAGES:
        elements: list[dict[str, Any]] = [
            _image_element(img.url, img.alt_text) for img in block.images[: MAX_CONTEXT_ELEMENTS - 1]
        ]
        if block.text:
            elements.append(_mrkdwn(block.text))
        if not elements:
            elements.append(_mrkdwn(" "))
        return {"type": "context", "elements": elements}

    if kind == BlockKind.USER_CONTEXT:
        avatars = user_avatars or {}
        elements = []
        for user_id in block.user_ids[:MAX_AVATARS]:
            url = avatars.get(user_id)
            if url:
                elements.append(_image_element(url, user_id))
        mentions = " ".join(f"<@{u}>" for u in block.user_ids)
        extra = len(block.user_ids) - MAX_AVATARS
        if extra > 0:
            mentions = f"{mentions} (+{extra} more)"
        text = " ".join(part for part in (mentions, block.text) if part) or "No users specified"
        elements.append(_mrkdwn(text))
        return {"type": "context", "elements": elements}

    if kind == BlockKind.BUTTONS:
        group_id = block.group_id or f"buttons_{index}"
        return {
            "type": "actions",
            "block_id": f"actions_{group_id}",
            "elements": [_render_button(group_id, i, b) for i, b in enumerate(block.buttons)],
        }

    if kind == BlockKind.FIELDS:
        fields = block.fields
        if len(fields) > MAX_FIELDS:
            logger.warning("Truncating %d fields to %d", len(fields), MAX_FIELDS)
            fields = fields[:MAX_FIELDS]
        return {
            "type": "section",
            "fields": [_mrkdwn(f"*{f.title}*\n{f.value}" if f.title else f.value) for f in fields],
        }

    raise ValueError(f"Unsupported block kind: {kind}")


def summary_text(blocks: list[RenderBlock]) -> str:
    """One-line notification summary: the first header, else the first section."""
    for kinds in ((BlockKind.HEADER,), (BlockKind.SECTION, BlockKind.SECTION_WITH_IMAGE)):
        for block in blocks:
            if block.kind in kinds and block.text.strip():
                return _truncate(" ".join(block.text.split()), MAX_NOTIFICATION_TEXT)
    return ""


def assemble(
    blocks: list[RenderBlock],
    accent_color: str | None = None,
    *,
    fallback_text: str | None = None,
    user_avatars: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build a ``{"text", "attachments"}`` payload from render blocks.

    ``text`` is always a short, non-empty notification string. It defaults
    to a single space because Slack shows the top-level text above the
    attachments, which would duplicate the rich content. Each attachment
    carries a ``fallback`` summary for notifications instead.
    """
    default_color = normalize_color(accent_color) if accent_color else DEFAULT_ACCENT_COLOR
    containers: dict[str, list[dict[str, Any]]] = {}
    sources: dict[str, list[RenderBlock]] = {}
    for index, block in enumerate(blocks):
        try:
            rendered = render_block(block, index=index, user_avatars=user_avatars)
        except (ValueError, IndexError) as e:
            logger.warning("Skipping block %d (%s): %s", index, block.kind, e)
            continue
        color = normalize_color(block.color) if block.color else default_color
        containers.setdefault(color, []).append(rendered)
        sources.setdefault(color, []).append(block)

    text = (fallback_text or "").strip()
    if text:
        text = _truncate(" ".join(text.split()), MAX_NOTIFICATION_TEXT)
    summary = text or summary_text(blocks) or DEFAULT_NOTIFICATION
    return {
        "text": text or FALLBACK_TEXT,
        "attachments": [
            {"color": color, "fallback": summary_text(sources[color]) or summary, "blocks": rendered}
            for color, rendered in containers.items()
        ],
    }


def count_blocks(payload: dict[str, Any]) -> int:
    total = len(payload.get("blocks") or [])
    for attachment in payload.get("attachments") or []:
        total += len(attachment.get("blocks") or [])
    return total


def confirmation_section(label: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": f"✅ Selected: *{label}*"}}
