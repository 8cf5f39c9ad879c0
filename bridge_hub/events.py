"""Inbound Slack event routing.

Both inbound surfaces (Socket Mode and the HTTP app) hand raw event and
interaction payloads to :class:`EventRouter`, which filters them, updates
thread state and runs the orchestration loop under the thread lock.
"""
from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from bridge_core.buttons import ButtonClick, ButtonInteractionHandler
from bridge_core.orchestrator import Orchestrator, TurnOutcome, TurnState
from bridge_core.schema import Message, Role
from bridge_core.thread_store import ThreadAccessor, ThreadStore
from bridge_hub.history import INITIAL_HISTORY_LIMIT, import_history

logger = logging.getLogger(__name__)

LOADING_REACTION = "loading"
DONE_REACTION = "white_check_mark"
FAILED_REACTION = "x"

IGNORED_SUBTYPES = frozenset({
    "bot_message",
    "message_changed",
    "message_deleted",
    "channel_join",
    "channel_leave",
    "channel_topic",
    "channel_purpose",
    "thread_broadcast",
})


@dataclass
class MessageContext:
    channel_id: str
    user_id: str | None
    text: str
    ts: str
    thread_ts: str | None = None
    is_direct_message: bool = False
    is_mention: bool = False

    @property
    def thread_id(self) -> str:
        if self.thread_ts:
            return self.thread_ts
        if self.is_direct_message:
            return f"{self.channel_id}:{self.user_id}"
        return self.ts

    @property
    def reply_thread_ts(self) -> str | None:
        """Where replies go: the reply chain, or a new one under a channel mention."""
        if self.thread_ts:
            return self.thread_ts
        return None if self.is_direct_message else self.ts

    def to_metadata(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "user_id": self.user_id,
            "ts": self.ts,
            "thread_ts": self.reply_thread_ts,
            "is_direct_message": self.is_direct_message,
            "is_mention": self.is_mention,
        }


def build_message_context(event: dict[str, Any], *, is_mention: bool = False) -> MessageContext:
    channel = str(event.get("channel") or "")
    return MessageContext(
        channel_id=channel,
        user_id=event.get("user"),
        text=str(event.get("text") or ""),
        ts=str(event.get("ts") or ""),
        thread_ts=event.get("thread_ts"),
        is_direct_message=event.get("channel_type") == "im" or channel.startswith("D"),
        is_mention=is_mention or event.get("type") == "app_mention",
    )


def filter_dev_prefix(text: str, prefix: str) -> str | None:
    """Text with the dev prefix removed, or None when the prefix is absent."""
    if not prefix or prefix not in (text or ""):
        return None
    return " ".join(text.replace(prefix, " ", 1).split())


class EventRouter:
    def __init__(
        self,
        store: ThreadStore,
        orchestrator: Orchestrator,
        platform: Any,
        *,
        dev_mode: bool = False,
        dev_prefix: str = "!@#",
        bot_user_id: str | None = None,
        seen_limit: int = 1000,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.platform = platform
        self.dev_mode = dev_mode
        self.dev_prefix = dev_prefix
        self.bot_user_id = bot_user_id
        self.buttons = ButtonInteractionHandler(store, orchestrator, platform)
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._seen_limit = seen_limit

    def _mark_seen(self, channel: str, ts: str) -> bool:
        """Record a delivery; False when it was already seen."""
        key = (channel, ts)
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)
        return True

    def should_handle(self, event: dict[str, Any]) -> MessageContext | None:
        etype = event.get("type")
        if etype not in ("message", "app_mention"):
            return None
        if event.get("bot_id") or event.get("subtype") in IGNORED_SUBTYPES:
            logger.debug("Skipped: bot message or subtype %s", event.get("subtype"))
            return None
        if event.get("subtype"):
            return None
        if self.bot_user_id and event.get("user") == self.bot_user_id:
            return None

        ctx = build_message_context(event)
        if etype == "message" and not ctx.is_direct_message:
            if not (ctx.thread_ts and ctx.thread_ts in self.store):
                logger.debug("Skipped: channel message outside a tracked thread")
                return None

        if self.dev_mode:
            stripped = filter_dev_prefix(ctx.text, self.dev_prefix)
            if stripped is None:
                logger.debug("Skipped: dev mode and no dev prefix")
                return None
            ctx.text = stripped
        if self.bot_user_id:
            ctx.text = re.sub(rf"<@{re.escape(self.bot_user_id)}>\s*", "", ctx.text).strip()

        if not self._mark_seen(ctx.channel_id, ctx.ts):
            logger.debug("Skipped: duplicate delivery %s/%s", ctx.channel_id, ctx.ts)
            return None
        return ctx

    async def handle_event(self, event: dict[str, Any]) -> TurnOutcome | None:
        ctx = self.should_handle(event)
        if ctx is None:
            return None
        return await self.handle_message(ctx)

    async def handle_message(self, ctx: MessageContext) -> TurnOutcome | None:
        thread_id = ctx.thread_id
        self.store.expire_idle()
        logger.info("Handling message %s in thread %s (user %s)", ctx.ts, thread_id, ctx.user_id)
        await self.platform.try_add_reaction(ctx.channel_id, ctx.ts, LOADING_REACTION)
        outcome: TurnOutcome | None = None
        try:
            async with self.store.lock(thread_id):
                thread = self.store.accessor(thread_id)
                thread.set_metadata("context", ctx.to_metadata())
                position = None
                if ctx.thread_ts and not thread.history_loaded:
                    position = await self._load_initial_history(thread, ctx)
                thread.add_message(
                    Message(role=Role.USER, text=ctx.text, user_id=ctx.user_id, message_ts=ctx.ts, position=position)
                )
                outcome = await self.orchestrator.run_locked(thread_id)
        except Exception:
            logger.exception("Turn failed for thread %s", thread_id)
        finally:
            await self.platform.try_remove_reaction(ctx.channel_id, ctx.ts, LOADING_REACTION)
            final = DONE_REACTION if outcome is not None and outcome.state == TurnState.COMPLETED else FAILED_REACTION
            await self.platform.try_add_reaction(ctx.channel_id, ctx.ts, final)
        return outcome

    async def _load_initial_history(self, thread: ThreadAccessor, ctx: MessageContext) -> int | None:
        """Import the oldest messages of the reply chain; returns the current message's position."""
        try:
            raw = await self.platform.fetch_replies(ctx.channel_id, ctx.thread_ts)
        except Exception as e:
            logger.warning("Could not load thread history for %s: %s", ctx.thread_ts, e)
            thread.mark_history_loaded()
            return None
        import_history(
            thread,
            raw,
            limit=INITIAL_HISTORY_LIMIT,
            exclude_ts=ctx.ts,
            bot_user_id=self.bot_user_id,
        )
        for position, message in enumerate(raw, start=1):
            if message.get("ts") == ctx.ts:
                return position
        return None

    async def handle_interaction(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        if payload.get("type") != "block_actions":
            logger.debug("Ignoring interaction type %s", payload.get("type"))
            return None
        try:
            click = ButtonClick.from_payload(payload)
        except ValueError as e:
            logger.warning("Bad interaction payload: %s", e)
            return None
        return await self.buttons.handle(click)
