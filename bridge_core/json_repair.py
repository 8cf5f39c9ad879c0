"""Lenient JSON handling for model-authored tool arguments."""
from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_BARE_KEY_RE = re.compile(r"[A-Za-z_$][\w$-]*")
_WHITESPACE = " \t\r\n"


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if present."""
    match = _FENCE_RE.match(text or "")
    if match:
        return match.group(1).strip()
    return (text or "").strip()


def normalize_json_text(text: str) -> str:
    """Conservatively repair common model JSON mistakes.

    Single pass with a string-boundary scanner: an unescaped ``"`` toggles
    "inside string". Outside strings, trailing commas are dropped and bare
    object keys are quoted. Inside strings, literal newlines are escaped.
    Tabs collapse to a space everywhere. If the scan ends inside a string
    the input is returned unchanged.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    last_sig = ""
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if in_string:
            if escaped:
                out.append(ch)
                escaped = False
            elif ch == "\\":
                out.append(ch)
                escaped = True
            elif ch == '"':
                out.append(ch)
                in_string = False
                last_sig = ch
            elif ch == "\n":
                out.append("\\n")
            elif ch == "\r":
                out.append("\\r")
            elif ch == "\t":
                out.append(" ")
            else:
                out.append(ch)
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if ch == "\t":
            out.append(" ")
            i += 1
            continue
        if ch == ",":
            j = i + 1
            while j < n and text[j] in _WHITESPACE:
                j += 1
            if j >= n or text[j] in "}]":
                i += 1
                continue
        if (ch.isalpha() or ch in "_$") and last_sig in ("{", ","):
            match = _BARE_KEY_RE.match(text, i)
            j = match.end() if match else n
            while j < n and text[j] in _WHITESPACE:
                j += 1
            if match and j < n and text[j] == ":":
                out.append(f'"{match.group(0)}"')
                last_sig = '"'
                i = match.end()
                continue
        out.append(ch)
        if ch not in _WHITESPACE:
            last_sig = ch
        i += 1

    if in_string:
        return text
    return "".join(out)


def find_balanced(text: str, start: int, open_ch: str = "{", close_ch: str = "}") -> str | None:
    """Return the balanced ``open_ch ... close_ch`` span starting at ``start``.

    Depth counting ignores delimiters inside JSON strings.
    """
    if start >= len(text) or text[start] != open_ch:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def loads_lenient(text: str) -> Any:
    """Parse ``text`` as JSON, repairing it if needed.

    Tries, in order: the fence-stripped text, its normalized form, and the
    normalized outermost ``{...}`` span. Raises ``ValueError`` when all fail.
    """
    cleaned = strip_code_fences(text)
    candidates = [cleaned, normalize_json_text(cleaned)]
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first and (first > 0 or last < len(cleaned) - 1):
        candidates.append(normalize_json_text(cleaned[first : last + 1]))

    last_error: Exception | None = None
    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except (json.JSONDecodeError, TypeError) as e:
            last_error = e
            continue
        # Double-encoded arguments: a JSON string holding a JSON object.
        if isinstance(obj, str) and obj.strip().startswith("{"):
            try:
                return loads_lenient(obj)
            except ValueError:
                return obj
        return obj
    raise ValueError(f"Unparseable JSON: {last_error}")


def unescape_json_fragment(value: str) -> str:
    """Unescape a raw JSON string body pulled out with a regex."""
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return (
            value.replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace('\\"', '"')
            .replace("\\/", "/")
            .replace("\\\\", "\\")
        )
