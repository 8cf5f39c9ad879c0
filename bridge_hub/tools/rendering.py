"""Shared DSL -> payload -> Slack send path for message-producing tools."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from bridge_core import blocks as assembler
from bridge_core import dsl
from bridge_core.schema import BlockKind, ButtonGroup, Message, RenderBlock, Role, ToolContext

logger = logging.getLogger(__name__)

AVATAR_SIZE_KEY = "image_48"


@dataclass
class RenderedMessage:
    payload: dict[str, Any]
    blocks: list[RenderBlock]
    groups: list[ButtonGroup] = field(default_factory=list)


def build_blocks(
    text: str,
    *,
    buttons: Any = None,
    fields: Any = None,
    images: Any = None,
) -> list[RenderBlock]:
    """DSL blocks from ``text`` followed by blocks from structured parameters."""
    out = dsl.parse(text)
    extra_fields = dsl.coerce_fields(fields)
    if extra_fields:
        out.append(RenderBlock(kind=BlockKind.FIELDS, fields=extra_fields))
    for image in dsl.coerce_images(images):
        out.append(RenderBlock(kind=BlockKind.IMAGE, images=[image]))
    extra_buttons = dsl.coerce_buttons(buttons)
    if extra_buttons:
        out.append(RenderBlock(kind=BlockKind.BUTTONS, buttons=extra_buttons))
    return out


def assign_button_groups(ctx: ToolContext, render_blocks: list[RenderBlock], prefix: str | None = None) -> list[ButtonGroup]:
    """Give every buttons block a thread-unique prefix and stable action ids."""
    groups = []
    for block in render_blocks:
        if block.kind != BlockKind.BUTTONS:
            continue
        block.group_id = prefix if (prefix and not groups) else ctx.thread.buttons.next_prefix()
        for i, button in enumerate(block.buttons):
            button.action_id = assembler.action_id_for(block.group_id, i, button)
        groups.append(ButtonGroup(prefix=block.group_id, buttons=list(block.buttons)))
    return groups


async def fetch_avatars(ctx: ToolContext, render_blocks: list[RenderBlock]) -> dict[str, str]:
    """Profile image URLs for users shown in userContext blocks."""
    wanted: list[str] = []
    for block in render_blocks:
        if block.kind == BlockKind.USER_CONTEXT:
            wanted.extend(u for u in block.user_ids[: assembler.MAX_AVATARS] if u not in wanted)
    avatars: dict[str, str] = {}
    for user_id in wanted:
        try:
            user = await ctx.platform.user_info(user_id)
        except Exception as e:
            logger.warning("Could not fetch avatar for %s: %s", user_id, e)
            continue
        url = (user.get("profile") or {}).get(AVATAR_SIZE_KEY)
        if url:
            avatars[user_id] = url
    return avatars


async def render_message(
    ctx: ToolContext,
    text: str,
    *,
    color: str | None = None,
    buttons: Any = None,
    fields: Any = None,
    images: Any = None,
    button_prefix: str | None = None,
) -> RenderedMessage:
    render_blocks = build_blocks(text, buttons=buttons, fields=fields, images=images)
    groups = assign_button_groups(ctx, render_blocks, button_prefix)
    avatars = await fetch_avatars(ctx, render_blocks)
    payload = assembler.assemble(render_blocks, color, user_avatars=avatars)
    return RenderedMessage(payload=payload, blocks=render_blocks, groups=groups)


async def send_rendered(
    ctx: ToolContext,
    rendered: RenderedMessage,
    text: str,
    *,
    thread_ts: str | None = None,
) -> dict[str, Any]:
    """Post the payload, register its buttons and record the assistant message."""
    channel = ctx.channel_id
    if not channel:
        raise ValueError("No channel available for this thread")
    resp = await ctx.platform.post_message(
        channel,
        text=rendered.payload["text"],
        attachments=rendered.payload["attachments"],
        thread_ts=thread_ts or ctx.thread_ts,
    )
    ts = resp.get("ts")
    for group in rendered.groups:
        group.text = text
        try:
            ctx.thread.buttons.register(group)
        except ValueError as e:
            logger.warning("Button group %s not registered: %s", group.prefix, e)
            continue
        ctx.thread.buttons.attach_message(group.prefix, ts, channel)

    ctx.thread.add_message(Message(role=Role.ASSISTANT, text=text, message_ts=ts))
    logger.info("Posted message %s to %s (%d blocks)", ts, channel, assembler.count_blocks(rendered.payload))
    return {
        "ts": ts,
        "channel": resp.get("channel") or channel,
        "message_sent": True,
        "text_preview": text[:100],
        "button_groups": [g.prefix for g in rendered.groups],
    }
