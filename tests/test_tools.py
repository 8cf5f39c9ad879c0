"""Tests for the individual tool implementations."""
from __future__ import annotations

import asyncio

from bridge_core.schema import Role, ToolContext
from bridge_core.thread_store import ThreadStore
from bridge_hub.tools import add_reaction, create_emoji_vote, get_user_avatar
from bridge_hub.tools.post_message import embedded_finish
from bridge_hub.tools.registry import ToolRegistry, _register_default_tools
from fakes import FakeSlack


def _setup(context: dict | None = None):
    store = ThreadStore()
    thread = store.accessor("1.0")
    thread.set_metadata("context", context or {"channel_id": "C1", "ts": "2.0", "thread_ts": "1.0", "user_id": "U1"})
    slack = FakeSlack()
    registry = ToolRegistry()
    _register_default_tools(registry)
    ctx = ToolContext(thread=thread, platform=slack, reasoning="test")
    return registry, thread, slack, ctx


def _run(registry, name, params, ctx):
    return asyncio.run(registry.execute(name, params, ctx))


class TestPostMessage:
    """Tests for postMessage."""

    def test_posts_rendered_blocks_and_registers_buttons(self):
        registry, thread, slack, ctx = _setup()
        result = _run(registry, "postMessage", {"text": "#header: Hi\n#buttons: [Yes|yes|primary, No|no]"}, ctx)

        assert result.ok is True
        assert len(slack.posted) == 1
        sent = slack.posted[0]
        assert sent["channel"] == "C1"
        assert sent["thread_ts"] == "1.0"
        rendered = sent["attachments"][0]["blocks"]
        assert rendered[1]["block_id"] == "actions_btn_1"
        assert [e["action_id"] for e in rendered[1]["elements"]] == ["btn_1_action_0", "btn_1_action_1"]

        group = thread.buttons.get("btn_1")
        assert group.message_ts == sent["ts"]
        assert group.channel_id == "C1"
        assert result.data["button_groups"] == ["btn_1"]

        assistant = [m for m in thread.messages() if m.role == Role.ASSISTANT]
        assert assistant[0].message_ts == sent["ts"]

    def test_structured_extras_follow_dsl_blocks(self):
        registry, _, slack, ctx = _setup()
        result = _run(
            registry,
            "postMessage",
            {"text": "Status", "fields": [{"title": "State", "value": "ok"}], "buttons": [{"text": "Go", "value": "go"}]},
            ctx,
        )
        assert result.ok is True
        types = [b["type"] for b in slack.posted[0]["attachments"][0]["blocks"]]
        assert types == ["section", "section", "actions"]

    def test_missing_text(self):
        registry, _, slack, ctx = _setup()
        result = _run(registry, "postMessage", {"text": "   "}, ctx)
        assert result.ok is False
        assert result.error == "missing_text"
        assert slack.posted == []

    def test_missing_channel(self):
        registry, _, _, ctx = _setup(context={"ts": "1.0"})
        result = _run(registry, "postMessage", {"text": "hello"}, ctx)
        assert result.error == "missing_channel"

    def test_embedded_finish_is_forwarded(self):
        registry, _, slack, ctx = _setup()
        text = '{"tool": "finishRequest", "parameters": {"summary": "nothing to add"}}'
        result = _run(registry, "postMessage", {"text": text}, ctx)
        assert result.ok is True
        assert result.data["finished"] is True
        assert result.data["summary"] == "nothing to add"
        assert slack.posted == []

    def test_embedded_finish_detection(self):
        assert embedded_finish("plain text mentioning finishRequest") is None
        assert embedded_finish('{"tool": "postMessage"}') is None
        assert embedded_finish('```json\n{"tool": "functions.finishRequest"}\n```') == {}


class TestCreateButtonMessage:
    def test_callback_id_becomes_prefix(self):
        registry, thread, slack, ctx = _setup()
        result = _run(
            registry,
            "createButtonMessage",
            {"text": "Pick a color", "buttons": ["Red", "Blue"], "callbackId": "pick color"},
            ctx,
        )
        assert result.ok is True
        assert result.data["button_count"] == 2
        group = thread.buttons.get("pick_color")
        assert group is not None
        assert group.callback_id == "pick_color"
        assert group.action_ids == ["pick_color_action_0", "pick_color_action_1"]
        actions = slack.posted[0]["attachments"][0]["blocks"][-1]
        assert actions["block_id"] == "actions_pick_color"

    def test_reused_callback_id_gets_fresh_prefix(self):
        registry, thread, _, ctx = _setup()
        _run(registry, "createButtonMessage", {"text": "One", "buttons": ["A"], "callbackId": "poll"}, ctx)
        result = _run(registry, "createButtonMessage", {"text": "Two", "buttons": ["B"], "callbackId": "poll"}, ctx)
        assert result.ok is True
        assert result.data["button_groups"] == ["btn_1"]
        assert len(thread.buttons) == 2

    def test_buttons_required(self):
        registry, _, _, ctx = _setup()
        result = _run(registry, "createButtonMessage", {"text": "Pick", "buttons": []}, ctx)
        assert result.ok is False
        assert result.error == "missing_buttons"


class TestUpdateMessage:
    def test_remove_buttons(self):
        registry, thread, slack, ctx = _setup()
        result = _run(
            registry,
            "updateMessage",
            {"messageTs": "3.0", "text": "Done!", "buttons": ["Again"], "removeButtons": True},
            ctx,
        )
        assert result.ok is True
        update = slack.updated[0]
        assert update["ts"] == "3.0"
        assert update["blocks"] == []
        assert [b["type"] for b in update["attachments"][0]["blocks"]] == ["section"]
        assert len(thread.buttons) == 0

    def test_new_buttons_are_registered_against_message(self):
        registry, thread, _, ctx = _setup()
        _run(registry, "updateMessage", {"messageTs": "3.0", "text": "Choose", "buttons": ["A"]}, ctx)
        group = thread.buttons.get("btn_1")
        assert group.message_ts == "3.0"

    def test_requires_content(self):
        registry, _, _, ctx = _setup()
        result = _run(registry, "updateMessage", {"messageTs": "3.0"}, ctx)
        assert result.ok is False
        assert result.error.startswith("missing_content")


class TestReactions:
    def test_normalize_emoji(self):
        assert add_reaction.normalize_emoji(":+1:, eyes eyes") == ["thumbsup", "eyes"]
        assert add_reaction.normalize_emoji(["check", "Heart"]) == ["white_check_mark", "heart"]

    def test_add_defaults_to_triggering_message(self):
        registry, _, slack, ctx = _setup()
        result = _run(registry, "addReaction", {"emoji": "thumbsup"}, ctx)
        assert result.ok is True
        assert slack.reactions == [("C1", "2.0", "thumbsup")]

    def test_explicit_message_ts(self):
        registry, _, slack, ctx = _setup()
        _run(registry, "addReaction", {"emoji": ["eyes"], "messageTs": "9.0"}, ctx)
        assert slack.reactions == [("C1", "9.0", "eyes")]

    def test_already_reacted_is_ignored(self):
        registry, _, slack, ctx = _setup()
        slack.reaction_errors["eyes"] = "already_reacted"
        result = _run(registry, "addReaction", {"emoji": "eyes heart"}, ctx)
        assert result.ok is True
        assert result.data["emoji"] == ["eyes", "heart"]

    def test_other_platform_errors_fail_the_call(self):
        registry, _, slack, ctx = _setup()
        slack.reaction_errors["eyes"] = "invalid_name"
        result = _run(registry, "addReaction", {"emoji": "eyes"}, ctx)
        assert result.ok is False
        assert "invalid_name" in result.error

    def test_remove_ignores_no_reaction(self):
        registry, _, slack, ctx = _setup()
        slack.reaction_errors["eyes"] = "no_reaction"
        result = _run(registry, "removeReaction", {"emoji": "eyes"}, ctx)
        assert result.ok is True


class TestGetUserAvatar:
    def test_clamp_size(self):
        assert get_user_avatar.clamp_size(100) == 72
        assert get_user_avatar.clamp_size(5000) == 1024
        assert get_user_avatar.clamp_size("big") == get_user_avatar.DEFAULT_SIZE

    def test_mention_and_size(self):
        registry, _, slack, ctx = _setup()
        slack.users["U9"] = {"name": "nine", "profile": {"image_192": "https://img/192.png", "display_name": "Nine"}}
        result = _run(registry, "getUserAvatar", {"userId": "<@U9|nine>"}, ctx)
        assert result.ok is True
        assert result.data == {"userId": "U9", "avatarUrl": "https://img/192.png", "size": 192, "name": "Nine"}

    def test_original_image_for_largest_size(self):
        registry, _, slack, ctx = _setup()
        slack.users["U9"] = {"profile": {"image_original": "https://img/orig.png", "image_72": "https://img/72.png"}}
        result = _run(registry, "getUserAvatar", {"userId": "U9", "size": 1024}, ctx)
        assert result.data["avatarUrl"] == "https://img/orig.png"

    def test_no_avatar(self):
        registry, _, _, ctx = _setup()
        result = _run(registry, "getUserAvatar", {"userId": "U404"}, ctx)
        assert result.ok is False
        assert result.error.startswith("no_avatar")


class TestThreadHistoryAndFinish:
    def test_get_thread_history_imports_replies(self):
        registry, thread, slack, ctx = _setup()
        slack.replies = [
            {"ts": "1.0", "user": "U1", "text": "parent"},
            {"ts": "1.5", "bot_id": "B1", "user": "UBOT", "text": "bot answer"},
            {"ts": "2.0", "user": "U1", "text": "follow up"},
        ]
        result = _run(registry, "getThreadHistory", {"limit": "10"}, ctx)
        assert result.ok is True
        assert result.data["messages_retrieved"] == 3
        assert result.data["has_parent"] is True
        messages = thread.messages()
        assert [m.position for m in messages] == [1, 2, 3]
        assert messages[0].is_parent_message is True
        assert messages[1].role == Role.ASSISTANT
        assert thread.get_metadata("context")["thread_stats"] == {"total_messages": 3, "has_parent": True}

    def test_get_thread_history_skips_known_messages(self):
        registry, thread, slack, ctx = _setup()
        slack.replies = [{"ts": "1.0", "user": "U1", "text": "parent"}]
        _run(registry, "getThreadHistory", {}, ctx)
        result = _run(registry, "getThreadHistory", {"limit": 5}, ctx)
        assert result.data["messages_imported"] == 0
        assert len(thread.messages()) == 1

    def test_finish_request_records_summary(self):
        registry, thread, _, ctx = _setup()
        result = _run(registry, "finishRequest", {"summary": "answered"}, ctx)
        assert result.data == {"request_completed": True, "summary": "answered"}
        assert thread.get_metadata("lastFinishSummary") == "answered"


class TestEmojiVote:
    def test_parse_options(self):
        options = create_emoji_vote.parse_options([
            {"text": "Pizza", "emoji": ":pizza:"},
            "Tacos",
            {"text": "Sushi", "emoji": "pizza"},
            {"text": ""},
        ])
        assert options == [
            {"text": "Pizza", "emoji": "pizza"},
            {"text": "Tacos", "emoji": "one"},
            {"text": "Sushi", "emoji": "two"},
        ]
        assert [o["text"] for o in create_emoji_vote.parse_options("Red, Blue")] == ["Red", "Blue"]
        assert create_emoji_vote.parse_options('[{"text": "Yes", "emoji": "thumbsup"}]') == [
            {"text": "Yes", "emoji": "thumbsup"}
        ]

    def test_posts_option_list_and_seeds_reactions(self):
        registry, thread, slack, ctx = _setup()
        result = _run(registry, "createEmojiVote", {
            "text": "#header: Lunch?",
            "options": [{"text": "Pizza", "emoji": "pizza"}, "Tacos"],
        }, ctx)

        assert result.ok is True
        sent = slack.posted[0]
        assert sent["thread_ts"] == "1.0"
        rendered = sent["attachments"][0]["blocks"]
        assert [b["type"] for b in rendered] == ["header", "section", "context"]
        assert ":pizza: Pizza\n:one: Tacos" in rendered[1]["text"]["text"]
        assert slack.reactions == [("C1", sent["ts"], "pizza"), ("C1", sent["ts"], "one")]

        assert result.data["voteId"] == "vote_1"
        vote = thread.get_metadata("votes")[sent["ts"]]
        assert vote["voteId"] == "vote_1"
        assert vote["seeded"] == ["pizza", "one"]

    def test_options_required(self):
        registry, _, slack, ctx = _setup()
        result = _run(registry, "createEmojiVote", {"text": "Lunch?", "options": []}, ctx)
        assert result.ok is False
        assert result.error == "missing_options"
        assert slack.posted == []

    def test_results_subtract_seed_reaction(self):
        registry, _, slack, ctx = _setup()
        created = _run(registry, "createEmojiVote", {"text": "Lunch?", "options": ["Pizza", "Tacos", "Salad"]}, ctx)
        ts = created.data["ts"]
        slack.messages[ts] = {"ts": ts, "reactions": [
            {"name": "one", "count": 3, "users": ["UBOT", "U1", "U2"]},
            {"name": "two", "count": 1, "users": ["UBOT"]},
            {"name": "tada", "count": 1, "users": ["U3"]},
        ]}

        result = _run(registry, "getVoteResults", {"voteId": "vote_1"}, ctx)
        assert result.ok is True
        assert [(r["text"], r["count"]) for r in result.data["results"]] == [("Pizza", 2), ("Tacos", 0), ("Salad", 0)]
        assert result.data["results"][0]["users"] == ["U1", "U2"]
        assert result.data["totalVotes"] == 2
        assert result.data["messageTs"] == ts

    def test_results_for_unregistered_message(self):
        registry, _, slack, ctx = _setup()
        slack.messages["5.0"] = {"ts": "5.0", "reactions": [
            {"name": "thumbsup", "count": 2, "users": ["U1", "U2"]},
            {"name": "eyes", "count": 2, "users": ["UBOT", "U1"]},
        ]}
        result = _run(registry, "getVoteResults", {"messageTs": "5.0"}, ctx)
        assert [(r["emoji"], r["count"]) for r in result.data["results"]] == [("thumbsup", 2), ("eyes", 1)]
        assert result.data["voteId"] is None

    def test_unknown_vote_id(self):
        registry, _, _, ctx = _setup()
        result = _run(registry, "getVoteResults", {"voteId": "vote_9"}, ctx)
        assert result.ok is False
        assert result.error.startswith("vote_not_found")
