"""Button click handling.

A click is resolved to its button group, the original message is rewritten
so the clicked actions block becomes a confirmation line, the selection is
recorded in thread metadata, and the orchestration loop runs again with
the button-click flag set. Repeat clicks with the same (message ts, value)
are no-ops that return the stored result.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from .blocks import CONFIRMATION_COLOR, confirmation_section
from .orchestrator import Orchestrator
from .schema import Message, Role
from .thread_store import ThreadStore

logger = logging.getLogger(__name__)

UPDATES_KEY = "buttonUpdates"


@dataclass
class ButtonClick:
    channel_id: str
    user_id: str | None
    message_ts: str
    action_id: str | None
    block_id: str | None
    value: str | None
    label: str | None = None
    thread_ts: str | None = None
    message: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ButtonClick":
        """Build from a Slack ``block_actions`` interaction payload."""
        actions = payload.get("actions") or []
        if not actions:
            raise ValueError("Interaction payload has no actions")
        action = actions[0]
        message = payload.get("message") or {}
        container = payload.get("container") or {}
        channel = payload.get("channel") or {}
        text = action.get("text")
        label = text.get("text") if isinstance(text, dict) else text
        return cls(
            channel_id=channel.get("id") or container.get("channel_id") or "",
            user_id=(payload.get("user") or {}).get("id"),
            message_ts=message.get("ts") or container.get("message_ts") or "",
            action_id=action.get("action_id"),
            block_id=action.get("block_id"),
            value=action.get("value") or action.get("url"),
            label=label,
            thread_ts=message.get("thread_ts") or container.get("thread_ts"),
            message=message,
        )

    @property
    def update_key(self) -> str:
        return f"{self.message_ts}:{self.value}"


def _replace_matching(blocks: list[Any], *, block_id: str | None, action_id: str | None, value: str | None,
                      label: str) -> bool:
    """Swap the first matching actions block for a confirmation section."""
    if block_id:
        for i, block in enumerate(blocks):
            if isinstance(block, dict) and block.get("block_id") == block_id:
                blocks[i] = confirmation_section(label)
                return True
    for i, block in enumerate(blocks):
        if not isinstance(block, dict) or block.get("type") != "actions":
            continue
        for element in block.get("elements") or []:
            if (action_id and element.get("action_id") == action_id) or (
                value is not None and element.get("value") == value
            ):
                blocks[i] = confirmation_section(label)
                return True
    return False


def rewrite_message(
    message: dict[str, Any],
    *,
    action_id: str | None,
    value: str | None,
    block_id: str | None,
    label: str,
) -> tuple[dict[str, Any], str]:
    """Return a copy of ``message`` with the clicked block replaced.

    Searches attachments first, then top-level blocks. When nothing
    matches a confirmation section is appended instead. The second item
    says where the change happened.
    """
    updated = copy.deepcopy(message)
    attachments = updated.get("attachments") or []
    for attachment in attachments:
        blocks = attachment.get("blocks")
        if isinstance(blocks, list) and _replace_matching(
            blocks, block_id=block_id, action_id=action_id, value=value, label=label
        ):
            return updated, "attachments"

    blocks = updated.get("blocks")
    if isinstance(blocks, list) and _replace_matching(
        blocks, block_id=block_id, action_id=action_id, value=value, label=label
    ):
        return updated, "blocks"

    logger.info("No matching button block for %s; appending confirmation", action_id or value)
    if attachments:
        attachments[-1].setdefault("blocks", []).append(confirmation_section(label))
    elif isinstance(blocks, list) and blocks:
        blocks.append(confirmation_section(label))
    else:
        updated["attachments"] = [{"color": CONFIRMATION_COLOR, "blocks": [confirmation_section(label)]}]
    return updated, "appended"


class ButtonInteractionHandler:
    def __init__(self, store: ThreadStore, orchestrator: Orchestrator, platform: Any) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.platform = platform

    def thread_id_for(self, click: ButtonClick) -> str:
        """The thread owning the clicked message's button group, else one derived from the click."""
        for thread_id in self.store.thread_ids():
            thread = self.store.get(thread_id)
            if thread and any(g.message_ts == click.message_ts for g in thread.buttons):
                return thread_id
        if click.thread_ts:
            return click.thread_ts
        if click.channel_id.startswith("D") and click.user_id:
            return f"{click.channel_id}:{click.user_id}"
        return click.message_ts

    async def handle(self, click: ButtonClick) -> dict[str, Any]:
        thread_id = self.thread_id_for(click)
        async with self.store.lock(thread_id):
            thread = self.store.accessor(thread_id, channel_id=click.channel_id, thread_ts=click.thread_ts)
            updates: dict[str, Any] = thread.get_metadata(UPDATES_KEY) or {}
            prior = updates.get(click.update_key)
            if prior is not None:
                logger.info("Ignoring repeat click %s in thread %s", click.update_key, thread_id)
                return {**prior, "duplicate": True}

            group = thread.buttons.resolve(click.action_id, click.block_id)
            button = group.button_for(click.action_id, click.value) if group else None
            label = click.label or (button.label if button else None) or click.value or "selected"
            if group is None:
                logger.warning("Click %s did not resolve to a registered button group", click.action_id)

            result: dict[str, Any] = {
                "thread_id": thread_id,
                "group": group.prefix if group else None,
                "label": label,
                "value": click.value,
                "updated": False,
            }
            updates[click.update_key] = result
            thread.set_metadata(UPDATES_KEY, updates)

            if click.message:
                new_message, where = rewrite_message(
                    click.message, action_id=click.action_id, value=click.value, block_id=click.block_id, label=label
                )
                try:
                    await self.platform.update_message(
                        click.channel_id,
                        click.message_ts,
                        text=new_message.get("text") or " ",
                        attachments=new_message.get("attachments"),
                        blocks=new_message.get("blocks"),
                    )
                    result["updated"] = True
                    result["where"] = where
                except Exception:
                    logger.exception("Failed to update button message %s", click.message_ts)

            thread.set_metadata(
                "lastButtonSelection",
                {"label": label, "value": click.value, "action_id": click.action_id,
                 "group": result["group"], "message_ts": click.message_ts, "user_id": click.user_id},
            )
            thread.set_metadata("buttonSelectionAlreadyAcknowledged", True)
            thread.add_message(
                Message(
                    role=Role.USER,
                    text=f'Clicked "{label}" (value: {click.value})',
                    user_id=click.user_id,
                    is_button_click=True,
                )
            )
            try:
                outcome = await self.orchestrator.run_locked(thread_id, is_button_click=True)
            finally:
                thread.set_metadata("buttonSelectionAlreadyAcknowledged", False)
            result["state"] = outcome.state.value
            return result
