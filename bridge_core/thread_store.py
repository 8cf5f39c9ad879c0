"""In-memory conversation state keyed by thread id.

The store is injected into the orchestrator and tools; nothing reads a
module-level thread map. Each thread id has one ``asyncio.Lock`` and only
the holder of that lock may run an orchestration loop against the thread.
Tools get a :class:`ThreadAccessor` scoped to a single thread and should
not keep it past the call.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from .schema import ButtonGroup, Message, Role, ToolExecutionRecord

logger = logging.getLogger(__name__)


class ButtonRegistry:
    """Button groups rendered in one thread, keyed by action prefix."""

    def __init__(self) -> None:
        self._groups: dict[str, ButtonGroup] = {}
        self._counter = 0

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator[ButtonGroup]:
        return iter(list(self._groups.values()))

    def next_prefix(self) -> str:
        self._counter += 1
        prefix = f"btn_{self._counter}"
        while prefix in self._groups:
            self._counter += 1
            prefix = f"btn_{self._counter}"
        return prefix

    def register(self, group: ButtonGroup) -> ButtonGroup:
        """Add a group. Action ids must stay unique within the thread."""
        taken = {aid for g in self._groups.values() if g.prefix != group.prefix for aid in g.action_ids}
        clash = taken.intersection(group.action_ids)
        if clash:
            raise ValueError(f"Duplicate action ids in thread: {sorted(clash)}")
        self._groups[group.prefix] = group
        logger.debug("Registered button group %s (%d buttons)", group.prefix, len(group.buttons))
        return group

    def get(self, prefix: str) -> ButtonGroup | None:
        return self._groups.get(prefix)

    def attach_message(self, prefix: str, message_ts: str | None, channel_id: str | None) -> None:
        group = self._groups.get(prefix)
        if group:
            group.message_ts = message_ts
            group.channel_id = channel_id

    def resolve(self, action_id: str | None, block_id: str | None = None) -> ButtonGroup | None:
        """Find the group a click belongs to: exact id, then prefix, then substring."""
        groups = list(self._groups.values())
        if not action_id and not block_id:
            return None

        for g in groups:
            if action_id and (action_id in g.action_ids or action_id == g.prefix):
                return g
            if block_id and block_id == g.block_id:
                return g

        if action_id:
            by_prefix = [g for g in groups if action_id.startswith(g.prefix + "_")]
            if by_prefix:
                return max(by_prefix, key=lambda g: len(g.prefix))

            for g in groups:
                if g.prefix in action_id or action_id in g.prefix:
                    logger.info("Resolved button %s to group %s by substring", action_id, g.prefix)
                    return g
        return None


@dataclass
class ConversationThread:
    thread_id: str
    messages: list[Message] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    tool_executions: list[ToolExecutionRecord] = field(default_factory=list)
    buttons: ButtonRegistry = field(default_factory=ButtonRegistry)
    history_loaded: bool = False
    created_at: float = 0.0
    last_active: float = 0.0


class ThreadAccessor:
    """Thread-scoped view handed to tools and the orchestration loop."""

    def __init__(
        self,
        store: "ThreadStore",
        thread_id: str,
        channel_id: str | None = None,
        thread_ts: str | None = None,
    ) -> None:
        self._store = store
        self.thread_id = thread_id
        self._channel_id = channel_id
        self._thread_ts = thread_ts

    @property
    def _thread(self) -> ConversationThread:
        return self._store.get_or_create(self.thread_id)

    @property
    def channel_id(self) -> str | None:
        if self._channel_id:
            return self._channel_id
        ctx = self.get_metadata("context") or {}
        return ctx.get("channel_id")

    @property
    def thread_ts(self) -> str | None:
        if self._thread_ts:
            return self._thread_ts
        ctx = self.get_metadata("context") or {}
        if ctx.get("is_direct_message"):
            # Direct messages reply in the conversation itself unless the user started a reply chain.
            return ctx.get("thread_ts")
        return ctx.get("thread_ts") or ctx.get("ts")

    @property
    def buttons(self) -> ButtonRegistry:
        return self._thread.buttons

    @property
    def history_loaded(self) -> bool:
        return self._thread.history_loaded

    def mark_history_loaded(self) -> None:
        self._thread.history_loaded = True

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self._thread.metadata.get(key, default)

    def set_metadata(self, key: str, value: Any) -> None:
        self._thread.metadata[key] = value

    def messages(self) -> list[Message]:
        return list(self._thread.messages)

    def has_message_ts(self, message_ts: str) -> bool:
        return any(m.message_ts == message_ts for m in self._thread.messages)

    def add_message(self, message: Message) -> Message:
        """Append a message, numbering user and assistant messages in order."""
        thread = self._thread
        if message.role in (Role.USER, Role.ASSISTANT) and message.position is None:
            message.position = 1 + sum(1 for m in thread.messages if m.role in (Role.USER, Role.ASSISTANT))
        thread.messages.append(message)
        thread.last_active = self._store.clock()
        return message

    def record_execution(self, record: ToolExecutionRecord) -> None:
        self._thread.tool_executions.append(record)

    def find_execution(self, key: str) -> ToolExecutionRecord | None:
        """Latest successful execution with this idempotency key."""
        for record in reversed(self._thread.tool_executions):
            if record.key == key and record.ok:
                return record
        return None

    def execution_history(self, limit: int | None = None) -> list[ToolExecutionRecord]:
        records = list(self._thread.tool_executions)
        return records[-limit:] if limit else records


class ThreadStore:
    def __init__(self, idle_ttl_s: float = 0, clock: Callable[[], float] = time.monotonic) -> None:
        self.idle_ttl_s = idle_ttl_s
        self.clock = clock
        self._threads: dict[str, ConversationThread] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._threads

    def thread_ids(self) -> list[str]:
        return list(self._threads)

    def get(self, thread_id: str) -> ConversationThread | None:
        return self._threads.get(thread_id)

    def get_or_create(self, thread_id: str) -> ConversationThread:
        thread = self._threads.get(thread_id)
        if thread is None:
            now = self.clock()
            thread = ConversationThread(thread_id=thread_id, created_at=now, last_active=now)
            self._threads[thread_id] = thread
            logger.debug("Created thread %s", thread_id)
        return thread

    def lock(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    def accessor(self, thread_id: str, channel_id: str | None = None, thread_ts: str | None = None) -> ThreadAccessor:
        self.get_or_create(thread_id)
        return ThreadAccessor(self, thread_id, channel_id=channel_id, thread_ts=thread_ts)

    def expire_idle(self) -> list[str]:
        """Drop threads idle longer than ``idle_ttl_s``; threads with a held lock are kept."""
        if not self.idle_ttl_s:
            return []
        cutoff = self.clock() - self.idle_ttl_s
        expired = []
        for thread_id, thread in list(self._threads.items()):
            lock = self._locks.get(thread_id)
            if thread.last_active < cutoff and not (lock and lock.locked()):
                del self._threads[thread_id]
                self._locks.pop(thread_id, None)
                expired.append(thread_id)
        if expired:
            logger.info("Expired %d idle threads", len(expired))
        return expired
