"""Tests for the rich-message assembler."""
from __future__ import annotations

import pytest

from bridge_core import blocks
from bridge_core.dsl import parse
from bridge_core.schema import BlockKind, ButtonSpec, FieldItem, RenderBlock


class TestNormalizeColor:
    """Tests for color normalization."""

    def test_named_colors(self):
        assert blocks.normalize_color("good") == "#2EB67D"
        assert blocks.normalize_color("Danger") == "#E01E5A"

    def test_hex_colors(self):
        assert blocks.normalize_color("#ff0000") == "#FF0000"
        assert blocks.normalize_color("00ff00") == "#00FF00"

    def test_missing_and_unknown(self):
        assert blocks.normalize_color(None) == blocks.DEFAULT_ACCENT_COLOR
        assert blocks.normalize_color("not-a-color") == blocks.DEFAULT_NAMED_FALLBACK


class TestRenderBlock:
    """Tests for single block rendering."""

    def test_header_is_plain_text_and_truncated(self):
        out = blocks.render_block(RenderBlock(kind=BlockKind.HEADER, text="x" * 400))
        assert out["type"] == "header"
        assert out["text"]["type"] == "plain_text"
        assert len(out["text"]["text"]) == blocks.MAX_HEADER_TEXT

    def test_buttons_get_group_action_ids(self):
        block = RenderBlock(
            kind=BlockKind.BUTTONS,
            group_id="btn_1",
            buttons=[ButtonSpec("Yes", "yes", "primary"), ButtonSpec("Docs", "https://example.com")],
        )
        out = blocks.render_block(block)
        assert out["type"] == "actions"
        assert out["block_id"] == "actions_btn_1"
        first, second = out["elements"]
        assert first["action_id"] == "btn_1_action_0"
        assert first["value"] == "yes"
        assert first["style"] == "primary"
        assert second["url"] == "https://example.com"
        assert "value" not in second

    def test_fields_are_capped(self):
        block = RenderBlock(kind=BlockKind.FIELDS, fields=[FieldItem(f"t{i}", str(i)) for i in range(15)])
        out = blocks.render_block(block)
        assert len(out["fields"]) == blocks.MAX_FIELDS
        assert out["fields"][0]["text"] == "*t0*\n0"

    def test_user_context_with_avatars(self):
        block = RenderBlock(kind=BlockKind.USER_CONTEXT, user_ids=["U1", "U2"], text="were here")
        out = blocks.render_block(block, user_avatars={"U1": "https://img/u1.png"})
        assert out["type"] == "context"
        assert out["elements"][0] == {"type": "image", "image_url": "https://img/u1.png", "alt_text": "U1"}
        assert out["elements"][-1]["text"] == "<@U1> <@U2> were here"

    def test_image_without_url_is_an_error(self):
        with pytest.raises(IndexError):
            blocks.render_block(RenderBlock(kind=BlockKind.IMAGE))


class TestAssemble:
    """Tests for payload assembly."""

    def test_groups_blocks_by_color_in_first_seen_order(self):
        payload = blocks.assemble([
            RenderBlock(kind=BlockKind.HEADER, text="Title"),
            RenderBlock(kind=BlockKind.SECTION, text="Green", color="good"),
            RenderBlock(kind=BlockKind.CONTEXT, text="Footer"),
        ])
        attachments = payload["attachments"]
        assert [a["color"] for a in attachments] == [blocks.DEFAULT_ACCENT_COLOR, "#2EB67D"]
        assert [b["type"] for b in attachments[0]["blocks"]] == ["header", "context"]
        assert [b["type"] for b in attachments[1]["blocks"]] == ["section"]

    def test_accent_color_applies_to_uncolored_blocks(self):
        payload = blocks.assemble([RenderBlock(kind=BlockKind.SECTION, text="x")], "blue")
        assert payload["attachments"][0]["color"] == "#0078D7"

    def test_fallback_text_defaults_to_space(self):
        payload = blocks.assemble(parse("#section: hello"))
        assert payload["text"] == blocks.FALLBACK_TEXT

    def test_fallback_text_is_collapsed(self):
        payload = blocks.assemble(parse("hello"), fallback_text="  Hello \n  world ")
        assert payload["text"] == "Hello world"

    def test_attachments_carry_notification_fallback(self):
        payload = blocks.assemble(parse("#header: Deploy   done\n#section: All green | color:good\n#divider:"))
        assert payload["text"] == blocks.FALLBACK_TEXT
        assert [a["fallback"] for a in payload["attachments"]] == ["Deploy done", "All green"]

    def test_fallback_uses_section_then_default(self):
        payload = blocks.assemble(parse("#section: Body text\n#divider: | color:red"))
        assert [a["fallback"] for a in payload["attachments"]] == ["Body text", "Body text"]
        payload = blocks.assemble(parse("#divider:"))
        assert payload["attachments"][0]["fallback"] == blocks.DEFAULT_NOTIFICATION

    def test_fallback_is_truncated(self):
        payload = blocks.assemble(parse("#section: " + "x" * 400))
        assert len(payload["attachments"][0]["fallback"]) == blocks.MAX_NOTIFICATION_TEXT

    def test_broken_blocks_are_skipped(self):
        payload = blocks.assemble([
            RenderBlock(kind=BlockKind.IMAGE),
            RenderBlock(kind=BlockKind.DIVIDER),
        ])
        assert blocks.count_blocks(payload) == 1

    def test_scenario_payload(self):
        payload = blocks.assemble(parse("#header: Hi\n\n#section: Pick one\n\n#buttons:[Yes|yes|primary, No|no]"))
        rendered = payload["attachments"][0]["blocks"]
        assert [b["type"] for b in rendered] == ["header", "section", "actions"]
        assert rendered[2]["elements"][0]["style"] == "primary"
