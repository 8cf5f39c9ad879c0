from __future__ import annotations

import json
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .thread_store import ThreadAccessor


FINISH_TOOL = "finishRequest"
POST_MESSAGE_TOOL = "postMessage"

_NAMESPACE_PREFIX_RE = re.compile(r"^(?:!?functions?\.|tools?\.)+")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def strip_namespace(name: str) -> str:
    """Remove namespace prefixes the model sometimes puts on tool names."""
    return _NAMESPACE_PREFIX_RE.sub("", (name or "").strip())


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class Message:
    role: Role
    text: str
    ts: str = field(default_factory=utc_now_iso)
    user_id: str | None = None
    message_ts: str | None = None
    tool_name: str | None = None
    is_button_click: bool = False
    is_system_note: bool = False
    is_parent_message: bool = False
    position: int | None = None
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "text": self.text,
            "ts": self.ts,
            "user_id": self.user_id,
            "message_ts": self.message_ts,
            "tool_name": self.tool_name,
            "is_button_click": self.is_button_click,
            "is_system_note": self.is_system_note,
            "is_parent_message": self.is_parent_message,
            "position": self.position,
            "message_id": self.message_id,
        }


@dataclass
class ToolCall:
    """One tool invocation requested by the model.

    ``reasoning`` is always kept at the top level; ``parameters`` never carries it.
    """

    tool: str
    parameters: dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""
    recovered_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "reasoning": self.reasoning, "parameters": dict(self.parameters)}


def canonicalize_parameters(parameters: dict[str, Any]) -> str:
    return json.dumps(parameters, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def idempotency_key(tool: str, parameters: dict[str, Any]) -> str:
    return f"{strip_namespace(tool)}:{canonicalize_parameters(parameters)}"


@dataclass
class ToolExecutionRecord:
    tool: str
    parameters: dict[str, Any]
    key: str
    result: dict[str, Any] | None = None
    error: str | None = None
    ts: str = field(default_factory=utc_now_iso)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "parameters": self.parameters,
            "result": self.result,
            "error": self.error,
            "ts": self.ts,
            "duration_ms": self.duration_ms,
        }


class BlockKind(str, Enum):
    SECTION = "section"
    HEADER = "header"
    CONTEXT = "context"
    DIVIDER = "divider"
    IMAGE = "image"
    SECTION_WITH_IMAGE = "sectionWithImage"
    CONTEXT_WITH_IMAGES = "contextWithImages"
    USER_CONTEXT = "userContext"
    BUTTONS = "buttons"
    FIELDS = "fields"


@dataclass
class ButtonSpec:
    label: str
    value: str
    style: str | None = None
    action_id: str | None = None

    @property
    def is_link(self) -> bool:
        return self.value.startswith(("http://", "https://"))


@dataclass
class ImageRef:
    url: str
    alt_text: str = "Image"


@dataclass
class FieldItem:
    title: str
    value: str


@dataclass
class RenderBlock:
    """Platform-agnostic representation of one visual element.

    Which attributes are meaningful depends on ``kind``.
    """

    kind: BlockKind
    text: str = ""
    color: str | None = None
    images: list[ImageRef] = field(default_factory=list)
    buttons: list[ButtonSpec] = field(default_factory=list)
    fields: list[FieldItem] = field(default_factory=list)
    user_ids: list[str] = field(default_factory=list)
    group_id: str | None = None


@dataclass
class ButtonGroup:
    """Button registry entry: one rendered set of buttons."""

    prefix: str
    buttons: list[ButtonSpec]
    message_ts: str | None = None
    channel_id: str | None = None
    text: str = ""
    callback_id: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def block_id(self) -> str:
        return f"actions_{self.prefix}"

    @property
    def action_ids(self) -> list[str]:
        return [b.action_id for b in self.buttons if b.action_id]

    def button_for(self, action_id: str | None, value: str | None) -> ButtonSpec | None:
        for b in self.buttons:
            if action_id and b.action_id == action_id:
                return b
        for b in self.buttons:
            if value is not None and b.value == value:
                return b
        return None


@dataclass
class ToolResult:
    """Result from tool execution."""

    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            result["data"] = self.data
        else:
            result["error"] = self.error or "unknown_error"
        return result


@dataclass
class ToolContext:
    """Context passed to tool handlers during execution."""

    thread: "ThreadAccessor"
    platform: Any
    reasoning: str = ""
    is_button_click: bool = False

    @property
    def channel_id(self) -> str | None:
        return self.thread.channel_id

    @property
    def thread_ts(self) -> str | None:
        return self.thread.thread_ts

    @property
    def trigger_ts(self) -> str | None:
        """Timestamp of the message that started the current turn."""
        ctx = self.thread.get_metadata("context") or {}
        return ctx.get("ts")
