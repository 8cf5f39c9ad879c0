"""Model response interpreter.

Extracts tool calls from a chat-completions response. Malformed argument
payloads go through an ordered chain of recovery strategies; the first one
that yields parameters wins. ``interpret`` never raises: the worst case is
a single apology ``postMessage`` call carrying :data:`FALLBACK_REASONING`.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from .dsl import coerce_buttons
from .json_repair import find_balanced, loads_lenient, strip_code_fences, unescape_json_fragment
from .schema import FINISH_TOOL, POST_MESSAGE_TOOL, ToolCall, strip_namespace

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "I'm sorry, I had trouble putting my response together. Could you try asking again?"
FALLBACK_REASONING = "fallback: unparseable tool arguments"
CONTENT_REASONING = "Converted from content"

_TEXT_FIELD_RE = re.compile(r'"text"\s*:\s*"((?:[^"\\]|\\.)*)("?)', re.DOTALL)
_COLOR_FIELD_RE = re.compile(r'"color"\s*:\s*"([^"]*)"')
_TOOL_FIELD_RE = re.compile(r'"tool"\s*:\s*"([^"]+)"')
_REASONING_FIELD_RE = re.compile(r'"reasoning"\s*:\s*"((?:[^"\\]|\\.)*)"')
_PARAMETERS_KEY_RE = re.compile(r'"parameters"\s*:\s*(?=\{)')
_ARRAY_KEY_RE = re.compile(r'"(buttons|actions)"\s*:\s*(?=\[)')
_CUSTOM_BUTTONS_RE = re.compile(r"#buttons:\s*(\[[^\]]*\])", re.IGNORECASE)
_CONTENT_CALL_PATTERNS = (
    re.compile(r"!function\.(\w+)\s*(?=\{)"),
    re.compile(r"\[(\w+)\]\s*(?=\{)"),
    re.compile(r"##\s+(?:functions\.)?(\w+)\s*(?=\{)"),
)
_TOOL_MARKER_RE = re.compile(r"##\s+(?:functions\.)?\w+\s*\n?")


# ---- recovery strategies ----

def _recover_nested_call(raw: str) -> dict[str, Any] | None:
    """Outer object wraps another ``{tool, parameters}`` call."""
    if '"tool"' not in raw and '"parameters"' not in raw:
        return None
    match = _PARAMETERS_KEY_RE.search(raw)
    if not match:
        return None
    span = find_balanced(raw, match.end())
    if not span:
        return None
    try:
        inner = loads_lenient(span)
    except ValueError:
        return None
    if not isinstance(inner, dict):
        return None
    result: dict[str, Any] = {"parameters": inner}
    tool = _TOOL_FIELD_RE.search(raw[: match.start()]) or _TOOL_FIELD_RE.search(raw)
    if tool:
        result["tool"] = tool.group(1)
    reasoning = _REASONING_FIELD_RE.search(raw[: match.start()])
    if reasoning:
        result["reasoning"] = unescape_json_fragment(reasoning.group(1))
    return result


def _extract_button_array(raw: str) -> list[Any] | None:
    match = _ARRAY_KEY_RE.search(raw)
    if match:
        span = find_balanced(raw, match.end(), "[", "]")
        if span:
            try:
                value = loads_lenient(span)
            except ValueError:
                value = None
            if isinstance(value, list) and value:
                return value
    custom = _CUSTOM_BUTTONS_RE.search(raw)
    if custom:
        buttons = coerce_buttons(custom.group(1))
        if buttons:
            return [{"text": b.label, "value": b.value, "style": b.style} for b in buttons]
    return None


def _recover_text_field(raw: str) -> dict[str, Any] | None:
    match = _TEXT_FIELD_RE.search(raw)
    if not match:
        return None
    body = match.group(1)
    if not match.group(2):
        # Truncated payload: keep what we have, minus dangling JSON punctuation.
        body = body.rstrip().rstrip('}],').rstrip('\\')
    text = unescape_json_fragment(body).strip()
    if not text:
        return None
    params: dict[str, Any] = {"text": text}
    color = _COLOR_FIELD_RE.search(raw)
    if color:
        params["color"] = color.group(1)
    buttons = _extract_button_array(raw)
    if buttons:
        params["buttons"] = buttons
    return params


def _recover_button_arrays(raw: str) -> dict[str, Any] | None:
    buttons = _extract_button_array(raw)
    if not buttons:
        return None
    return {"text": "Please choose an option:", "buttons": buttons}


RecoveryStrategy = Callable[[str], "dict[str, Any] | None"]

RECOVERY_STRATEGIES: list[tuple[str, RecoveryStrategy]] = [
    ("nested_tool_call", _recover_nested_call),
    ("text_field", _recover_text_field),
    ("button_arrays", _recover_button_arrays),
]


def fallback_call(tool: str | None = None) -> ToolCall:
    """Minimal safe call used when nothing could be recovered."""
    if tool and strip_namespace(tool) == FINISH_TOOL:
        return ToolCall(tool=FINISH_TOOL, parameters={}, reasoning=FALLBACK_REASONING, recovered_by="fallback")
    return ToolCall(
        tool=POST_MESSAGE_TOOL,
        parameters={"text": FALLBACK_TEXT},
        reasoning=FALLBACK_REASONING,
        recovered_by="fallback",
    )


def parse_arguments(raw: Any) -> tuple[dict[str, Any] | None, str | None]:
    """Parse a tool-call argument payload.

    Returns ``(parameters, recovered_by)``. ``recovered_by`` is ``None``
    for a clean parse, the strategy name for a recovery, and parameters are
    ``None`` when every strategy failed.
    """
    if isinstance(raw, dict):
        return dict(raw), None
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}, None
    text = raw if isinstance(raw, str) else str(raw)
    try:
        parsed = loads_lenient(text)
        if isinstance(parsed, dict):
            return parsed, None
    except ValueError:
        pass

    stripped = strip_code_fences(text)
    for name, strategy in RECOVERY_STRATEGIES:
        try:
            params = strategy(stripped)
        except Exception:
            logger.exception("Recovery strategy %s failed", name)
            continue
        if params:
            logger.info("Recovered tool arguments via %s", name)
            return params, name
    return None, None


def normalize_call(tool: str, params: dict[str, Any], *, recovered_by: str | None = None) -> ToolCall:
    """Hoist nested ``{tool, parameters}`` shapes and reasoning to the top level."""
    name = strip_namespace(tool)
    params = dict(params)
    reasoning = params.pop("reasoning", None)

    inner = params.get("parameters")
    if isinstance(inner, dict) and set(params) <= {"parameters", "tool"}:
        nested_tool = params.get("tool")
        if isinstance(nested_tool, str) and nested_tool.strip():
            name = strip_namespace(nested_tool)
        params = dict(inner)
        nested_reasoning = params.pop("reasoning", None)
        reasoning = reasoning or nested_reasoning

    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = f"No reasoning provided for {name}"
    return ToolCall(tool=name or POST_MESSAGE_TOOL, parameters=params, reasoning=reasoning.strip(), recovered_by=recovered_by)


def _interpret_raw_call(name: str, raw_arguments: Any) -> ToolCall:
    params, recovered_by = parse_arguments(raw_arguments)
    if params is None:
        logger.warning("Could not recover arguments for %s; using fallback call", name)
        return fallback_call(name)
    return normalize_call(name, params, recovered_by=recovered_by)


def _calls_from_content(content: str) -> list[ToolCall]:
    """Tool calls the model wrote into ``content`` instead of ``tool_calls``."""
    calls: list[ToolCall] = []
    stripped = strip_code_fences(content)
    if stripped.startswith("{") and '"tool"' in stripped:
        try:
            obj = loads_lenient(stripped)
        except ValueError:
            obj = None
        if isinstance(obj, dict) and isinstance(obj.get("tool"), str):
            return [normalize_call(obj["tool"], obj, recovered_by="content_json")]

    for pattern in _CONTENT_CALL_PATTERNS:
        for match in pattern.finditer(content):
            span = find_balanced(content, match.end())
            if not span:
                continue
            try:
                params = loads_lenient(span)
            except ValueError:
                logger.debug("Unparseable content call for %s", match.group(1))
                continue
            if isinstance(params, dict):
                calls.append(normalize_call(match.group(1), params, recovered_by="content_marker"))
        if calls:
            break
    return calls


def _order_calls(calls: list[ToolCall]) -> list[ToolCall]:
    # Finish goes last so a message proposed in the same response is sent first.
    return sorted(calls, key=lambda c: c.tool == FINISH_TOOL)


def interpret(raw_model_response: Any) -> list[ToolCall]:
    """Extract tool calls from a chat-completions response. Never raises."""
    try:
        return _interpret(raw_model_response)
    except Exception:
        logger.exception("Unexpected error interpreting model response")
        return [fallback_call()]


def _interpret(response: Any) -> list[ToolCall]:
    if not isinstance(response, dict):
        logger.warning("Model response is not an object: %r", type(response).__name__)
        return [fallback_call()]
    choices = response.get("choices") or []
    message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        logger.warning("No assistant message in model response")
        return [fallback_call()]

    raw_calls = list(message.get("tool_calls") or [])
    legacy = message.get("function_call")
    if not raw_calls and isinstance(legacy, dict):
        raw_calls = [{"function": legacy}]

    calls: list[ToolCall] = []
    for raw_call in raw_calls:
        fn = raw_call.get("function") if isinstance(raw_call, dict) else None
        if not isinstance(fn, dict) or not fn.get("name"):
            logger.warning("Skipping tool call without a function name: %r", raw_call)
            continue
        calls.append(_interpret_raw_call(str(fn["name"]), fn.get("arguments")))

    content = message.get("content")
    if not calls and isinstance(content, str) and content.strip():
        calls = _calls_from_content(content)
        if not calls:
            text = _TOOL_MARKER_RE.sub("", strip_code_fences(content)).strip()
            calls = [ToolCall(tool=POST_MESSAGE_TOOL, parameters={"text": text}, reasoning=CONTENT_REASONING)]

    if raw_calls and not calls:
        return [fallback_call()]
    return _order_calls(calls)


def message_text(call: ToolCall) -> str:
    """User-visible text a message-sending call proposes, for duplicate checks."""
    text = call.parameters.get("text")
    if isinstance(text, str):
        return text
    return json.dumps(call.parameters, sort_keys=True, default=str) if call.parameters else ""
