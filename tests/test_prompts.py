"""Tests for prompt construction and conversation formatting."""
from __future__ import annotations

import json

from bridge_core import prompts
from bridge_core.schema import Message, Role


class TestBuildSystemPrompt:
    def test_thread_context(self):
        prompt = prompts.build_system_prompt(
            {
                "channel_id": "C1",
                "user_id": "U1",
                "thread_ts": "1.0",
                "thread_stats": {"total_messages": 14, "has_parent": True},
            },
            ["postMessage", "finishRequest"],
        )
        assert "- Chat Type: Thread" in prompt
        assert "- User: U1" in prompt
        assert "- Total Messages in Thread: 14" in prompt
        assert "First 10 included below" in prompt
        assert "- postMessage" in prompt
        assert "=== MESSAGE FORMATTING ===" in prompt

    def test_direct_message(self):
        prompt = prompts.build_system_prompt({"is_direct_message": True})
        assert "- Chat Type: Direct Message" in prompt
        assert "YOUR AVAILABLE TOOLS" not in prompt

    def test_empty_context(self):
        prompt = prompts.build_system_prompt(None)
        assert "- User: unknown" in prompt
        assert "- Chat Type: Channel Message" in prompt


class TestFormatMessage:
    """Role and label rendering for thread messages."""

    def test_parent_user_message(self):
        msg = Message(role=Role.USER, text="hello", position=1, is_parent_message=True)
        assert prompts.format_message(msg) == {
            "role": "user",
            "content": "THREAD PARENT MESSAGE [MESSAGE #1]:\nUSER MESSAGE: hello",
        }

    def test_assistant_reply(self):
        msg = Message(role=Role.ASSISTANT, text="hi", position=2)
        out = prompts.format_message(msg)
        assert out["role"] == "assistant"
        assert out["content"] == "THREAD REPLY [MESSAGE #2]:\nYOUR PREVIOUS RESPONSE: hi"

    def test_button_click(self):
        msg = Message(role=Role.USER, text='Clicked "Yes"', is_button_click=True)
        assert prompts.format_message(msg)["content"] == 'THREAD REPLY:\nBUTTON CLICK: Clicked "Yes"'

    def test_tool_result_is_system(self):
        msg = Message(role=Role.TOOL, text='{"ok": true}', tool_name="addReaction")
        assert prompts.format_message(msg) == {"role": "system", "content": 'TOOL RESULT (addReaction): {"ok": true}'}

    def test_empty_text(self):
        msg = Message(role=Role.USER, text="")
        assert prompts.format_message(msg)["content"].endswith("USER MESSAGE: No text content")


class TestFormatMessagesForModel:
    def test_system_prompt_first(self):
        out = prompts.format_messages_for_model([Message(role=Role.USER, text="x")], "SYSTEM")
        assert out[0] == {"role": "system", "content": "SYSTEM"}
        assert len(out) == 2

    def test_button_acknowledgement_note(self):
        metadata = {"lastButtonSelection": {"label": "Approve"}, "buttonSelectionAlreadyAcknowledged": True}
        out = prompts.format_messages_for_model([], "SYSTEM", metadata)
        assert out[-1]["role"] == "system"
        assert '"Approve" button' in out[-1]["content"]

    def test_no_note_once_acknowledgement_cleared(self):
        metadata = {"lastButtonSelection": {"label": "Approve"}, "buttonSelectionAlreadyAcknowledged": False}
        assert len(prompts.format_messages_for_model([], "SYSTEM", metadata)) == 1


class TestSummarizeToolResult:
    def test_error(self):
        out = json.loads(prompts.summarize_tool_result("postMessage", {}, {"ok": False, "error": "missing_text"}))
        assert out == {"ok": False, "error": "missing_text"}

    def test_post_message_preview(self):
        out = json.loads(prompts.summarize_tool_result("postMessage", {"text": "y" * 150}, {"ok": True, "data": {}}))
        assert out["message_sent"] is True
        assert out["text"] == "y" * 100 + "..."

    def test_history(self):
        data = {"messages_retrieved": 4, "has_parent": True}
        out = json.loads(prompts.summarize_tool_result("getThreadHistory", {}, {"ok": True, "data": data}))
        assert out == {"thread_history_retrieved": True, "messages_count": 4, "has_parent": True}

    def test_finish(self):
        out = json.loads(prompts.summarize_tool_result("finishRequest", {}, {"ok": True, "data": {}}))
        assert out == {"request_completed": True, "summary": "Request completed"}

    def test_other_tools_keep_scalars(self):
        data = {"userId": "U1", "size": 72, "nested": {"x": 1}}
        out = json.loads(prompts.summarize_tool_result("getUserAvatar", {}, {"ok": True, "data": data}))
        assert out == {"ok": True, "userId": "U1", "size": 72}
