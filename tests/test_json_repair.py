"""Tests for lenient JSON parsing of model tool arguments."""
from __future__ import annotations

import json

import pytest

from bridge_core.json_repair import (
    find_balanced,
    loads_lenient,
    normalize_json_text,
    strip_code_fences,
    unescape_json_fragment,
)


class TestNormalizeJsonText:
    """Tests for the single-pass JSON repair scanner."""

    def test_trailing_comma(self):
        assert json.loads(normalize_json_text('{"text": "hi", }')) == {"text": "hi"}

    def test_trailing_comma_in_array(self):
        assert json.loads(normalize_json_text('{"a": [1, 2, ]}')) == {"a": [1, 2]}

    def test_bare_keys_are_quoted(self):
        assert json.loads(normalize_json_text('{text: "hi", count: 2}')) == {"text": "hi", "count": 2}

    def test_literal_newline_inside_string(self):
        assert json.loads(normalize_json_text('{"text": "line one\nline two"}')) == {"text": "line one\nline two"}

    def test_commas_inside_strings_untouched(self):
        assert json.loads(normalize_json_text('{"text": "a, }"}')) == {"text": "a, }"}

    def test_unterminated_string_returned_unchanged(self):
        raw = '{"text": "oops'
        assert normalize_json_text(raw) == raw


class TestLoadsLenient:
    """Tests for loads_lenient."""

    def test_trailing_comma_scenario(self):
        assert loads_lenient('{"text": "hi", }') == {"text": "hi"}

    def test_code_fence(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert loads_lenient('```json\n{"a": 1}\n```') == {"a": 1}

    def test_prose_around_object(self):
        assert loads_lenient('Here you go: {"a": 1} thanks!') == {"a": 1}

    def test_double_encoded(self):
        assert loads_lenient(json.dumps(json.dumps({"a": 1}))) == {"a": 1}

    def test_garbage_raises_value_error(self):
        with pytest.raises(ValueError):
            loads_lenient("definitely not json")


class TestHelpers:
    def test_find_balanced_ignores_braces_in_strings(self):
        text = 'x {"a": "}", "b": {"c": 1}} tail'
        assert find_balanced(text, 2) == '{"a": "}", "b": {"c": 1}}'

    def test_find_balanced_unclosed(self):
        assert find_balanced('{"a": {', 0) is None
        assert find_balanced("abc", 0) is None

    def test_unescape_fragment(self):
        assert unescape_json_fragment("line\\nnext \\\"quoted\\\"") == 'line\nnext "quoted"'
