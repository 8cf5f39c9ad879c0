"""Import Slack thread history into a conversation thread."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from bridge_core.schema import Message, Role
from bridge_core.thread_store import ThreadAccessor

logger = logging.getLogger(__name__)

INITIAL_HISTORY_LIMIT = 10


@dataclass
class HistoryImport:
    retrieved: int
    imported: int
    has_parent: bool
    total_in_thread: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages_retrieved": self.retrieved,
            "messages_imported": self.imported,
            "has_parent": self.has_parent,
            "total_messages_in_thread": self.total_in_thread,
        }


def is_bot_message(raw: dict[str, Any], bot_user_id: str | None = None) -> bool:
    if raw.get("bot_id") or raw.get("subtype") == "bot_message":
        return True
    return bool(bot_user_id) and raw.get("user") == bot_user_id


def to_message(raw: dict[str, Any], *, position: int, thread_ts: str | None, bot_user_id: str | None) -> Message:
    ts = raw.get("ts")
    return Message(
        role=Role.ASSISTANT if is_bot_message(raw, bot_user_id) else Role.USER,
        text=str(raw.get("text") or ""),
        user_id=raw.get("user"),
        message_ts=ts,
        is_parent_message=bool(thread_ts) and ts == thread_ts,
        position=position,
    )


def import_history(
    thread: ThreadAccessor,
    raw_messages: list[dict[str, Any]],
    *,
    limit: int | None = None,
    include_parent: bool = True,
    exclude_ts: str | None = None,
    bot_user_id: str | None = None,
) -> HistoryImport:
    """Append Slack messages (oldest first) to ``thread``.

    Positions are the 1-based index within the full reply chain. Messages
    whose ts is already in the thread, or equals ``exclude_ts``, are skipped.
    """
    thread_ts = thread.thread_ts
    positioned = list(enumerate(raw_messages, start=1))
    if not include_parent:
        positioned = [(p, m) for p, m in positioned if m.get("ts") != thread_ts]
    if limit:
        positioned = positioned[:limit]

    imported = 0
    for position, raw in positioned:
        ts = raw.get("ts")
        if not ts or ts == exclude_ts or thread.has_message_ts(ts):
            continue
        if raw.get("subtype") in ("channel_join", "channel_leave", "message_deleted"):
            continue
        thread.add_message(to_message(raw, position=position, thread_ts=thread_ts, bot_user_id=bot_user_id))
        imported += 1

    has_parent = any(m.get("ts") == thread_ts for _, m in positioned)
    result = HistoryImport(
        retrieved=len(positioned),
        imported=imported,
        has_parent=has_parent,
        total_in_thread=len(raw_messages),
    )
    thread.mark_history_loaded()
    ctx = thread.get_metadata("context") or {}
    if ctx:
        ctx["thread_stats"] = {"total_messages": len(raw_messages), "has_parent": has_parent}
        thread.set_metadata("context", ctx)
    logger.info("Imported %d/%d history messages into %s", imported, len(positioned), thread.thread_id)
    return result
