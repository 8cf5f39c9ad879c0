"""Prompt text and conversation formatting for the model.

Prompt vocabulary lives here so a deployment can replace it without
touching the orchestration loop.
"""
from __future__ import annotations

import json
from typing import Any, Iterable

from .schema import FINISH_TOOL, POST_MESSAGE_TOOL, Message, Role

SYSTEM_PROMPT_BASE = """You are a helpful assistant working inside Slack. You help users by answering questions and performing tasks.
You must be honest and you must not fabricate facts. When uncertain, say so.
"""

MESSAGE_NUMBERING = """
=== MESSAGE NUMBERING ===
- Messages are numbered chronologically with [MESSAGE #X] indicating position in the thread
- Message #1 is always the first/parent message in the thread
- When asked about the "second message" or "third message", use the explicit numbering
"""

WORKFLOW = f"""
=== CONVERSATION FLOW ===
1. Read the conversation and decide what the user needs
2. Respond ONCE with {POST_MESSAGE_TOOL}
3. Then end your turn with {FINISH_TOOL}
- Every tool call must include a short 'reasoning' field
- NEVER send multiple messages or repeat yourself
- If YOUR PREVIOUS RESPONSE already answers the user, call {FINISH_TOOL} without posting
- You can mention users with <@USER_ID>
"""

FORMATTING_GUIDE = """
=== MESSAGE FORMATTING ===
The text of a message may use block syntax, one block per segment:
#header: Short title
#section: Markdown body text | color:good
#context: Small print
#divider:
#image: https://example.com/chart.png | Alt text
#section: Text with a thumbnail | image:https://example.com/t.png | Alt text
#fields: [Status|Open, Owner|<@U123>]
#userContext: <@U123>, <@U456> | were involved
#buttons: [Approve|approve|primary, Reject|reject|danger, Docs|https://example.com]
Colors: good, warning, danger, blue, green, red, orange, purple or #RRGGBB.
Text without block syntax is sent as a single section.
"""

BUTTON_ACKNOWLEDGED_NOTE = (
    'IMPORTANT: The user clicked the "{label}" button. The original message has ALREADY been '
    "updated to show their selection. DO NOT post another acknowledgment of this selection; "
    "continue directly with the next step for their choice."
)

ITERATION_WARNING = (
    "WARNING: You are about to reach the maximum number of steps for this request. "
    f"Send your final response now or call {FINISH_TOOL}."
)

POST_SENT_NOTE = (
    f"Message sent to the user. Do not send another message for this request; call {FINISH_TOOL} now."
)

DUPLICATE_BLOCKED_NOTE = (
    "BLOCKED: That message repeats one already sent in this request and was not posted."
)

MESSAGE_CAP_NOTE = (
    "BLOCKED: A message was already sent for this request. Only one message is allowed per request."
)

LOOP_DETECTED_NOTE = (
    "LOOP DETECTED: You have called {tool} {count} times in a row. "
    f"Respond to the user with {POST_MESSAGE_TOOL} and then call {FINISH_TOOL}."
)

MAX_PREVIEW_CHARS = 100


def _chat_type(context: dict[str, Any]) -> str:
    if context.get("is_direct_message"):
        return "Direct Message"
    if context.get("thread_ts"):
        return "Thread"
    return "Channel Message"


def build_system_prompt(context: dict[str, Any] | None, tool_names: Iterable[str] = ()) -> str:
    context = context or {}
    lines = [
        SYSTEM_PROMPT_BASE,
        "=== THREAD CONTEXT ===",
        f"- Chat Type: {_chat_type(context)}",
        f"- User: {context.get('user_id') or 'unknown'}",
        f"- Channel: {context.get('channel_id') or 'unknown'}",
    ]
    if context.get("thread_ts"):
        lines.append(f"- Thread: {context['thread_ts']}")
        stats = context.get("thread_stats") or {}
        if stats:
            total = int(stats.get("total_messages", 0))
            lines.append(f"- Total Messages in Thread: {total}")
            lines.append(f"- Parent Message Available: {'Yes' if stats.get('has_parent') else 'No'}")
            lines.append(
                "- Recent Messages: "
                + ("All included below" if total <= 10 else "First 10 included below (oldest messages)")
            )

    names = list(tool_names)
    prompt = "\n".join(lines) + "\n" + MESSAGE_NUMBERING
    if names:
        prompt += "\n=== YOUR AVAILABLE TOOLS ===\n" + "\n".join(f"- {n}" for n in names) + "\n"
    return prompt + WORKFLOW + FORMATTING_GUIDE


def _position_label(message: Message) -> str:
    return f" [MESSAGE #{message.position}]" if message.position else ""


def format_message(message: Message) -> dict[str, str]:
    """Render one thread message as a chat-completions message."""
    if message.role == Role.SYSTEM:
        return {"role": "system", "content": message.text}
    if message.role == Role.TOOL:
        return {"role": "system", "content": f"TOOL RESULT ({message.tool_name or 'unknown'}): {message.text}"}

    kind = "THREAD PARENT MESSAGE" if message.is_parent_message else "THREAD REPLY"
    prefix = f"{kind}{_position_label(message)}:\n"
    text = message.text or "No text content"
    if message.role == Role.ASSISTANT:
        return {"role": "assistant", "content": f"{prefix}YOUR PREVIOUS RESPONSE: {text}"}
    if message.is_button_click:
        return {"role": "user", "content": f"{prefix}BUTTON CLICK: {text}"}
    return {"role": "user", "content": f"{prefix}USER MESSAGE: {text}"}


def format_messages_for_model(
    thread_messages: Iterable[Message],
    system_prompt: str,
    metadata: dict[str, Any] | None = None,
) -> list[dict[str, str]]:
    """Build the model request message list: system prompt, history, notes."""
    metadata = metadata or {}
    out = [{"role": "system", "content": system_prompt}]
    out.extend(format_message(m) for m in thread_messages)

    selection = metadata.get("lastButtonSelection")
    if selection and metadata.get("buttonSelectionAlreadyAcknowledged"):
        label = selection.get("label") or selection.get("value") or "selected"
        out.append({"role": "system", "content": BUTTON_ACKNOWLEDGED_NOTE.format(label=label)})
    return out


def _preview(text: Any) -> str | None:
    if not isinstance(text, str):
        return None
    return text if len(text) <= MAX_PREVIEW_CHARS else text[:MAX_PREVIEW_CHARS] + "..."


def summarize_tool_result(name: str, params: dict[str, Any], result: dict[str, Any]) -> str:
    """Compact JSON summary of a tool result for the model's context."""
    data = result.get("data") or {}
    if not result.get("ok", False):
        summary: dict[str, Any] = {"ok": False, "error": result.get("error") or "unknown_error"}
    elif name == POST_MESSAGE_TOOL:
        summary = {"message_sent": True, "text": _preview(params.get("text"))}
    elif name == "getThreadHistory":
        summary = {
            "thread_history_retrieved": True,
            "messages_count": data.get("messages_retrieved", 0),
            "has_parent": bool(data.get("has_parent")),
        }
    elif name == FINISH_TOOL:
        summary = {"request_completed": True, "summary": params.get("summary") or "Request completed"}
    else:
        summary = {"ok": True, **{k: v for k, v in data.items() if not isinstance(v, (dict, list))}}
    return json.dumps(summary, default=str, ensure_ascii=False)
