"""Message DSL parser.

Turns model-authored text such as::

    #header: Weekly report
    #section: All systems nominal | color:good
    #buttons: [Details|details|primary, Docs|https://example.com/docs]

into an ordered list of :class:`RenderBlock`. Block types are matched
case-insensitively; unknown types are skipped with a log line. Text without
any block syntax becomes a single section.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from .schema import BlockKind, ButtonSpec, FieldItem, ImageRef, RenderBlock

logger = logging.getLogger(__name__)

_BLOCK_RE = re.compile(r"#([a-zA-Z]+):\s*([\s\S]*?)(?=\s*#[a-zA-Z]+:|$)")
_COLOR_PARAM_RE = re.compile(r"\s*\|\s*colou?r:\s*([#\w]+)\s*", re.IGNORECASE)
_SECTION_IMAGE_RE = re.compile(r"\|\s*image:\s*(\S+?)\s*(?:\|\s*(.*))?$", re.IGNORECASE | re.DOTALL)
_IMAGES_PARAM_RE = re.compile(r"\|\s*images:\s*\[(.*)\]\s*$", re.IGNORECASE | re.DOTALL)
_MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")
_PLAIN_USER_ID_RE = re.compile(r"^[UW][A-Z0-9]+$")

_BLOCK_TYPES: dict[str, BlockKind] = {kind.value.lower(): kind for kind in BlockKind}

_BUTTON_STYLES = {"primary", "danger"}
_PAIRS = {"[": "]", "{": "}"}
_QUOTES = {'"', "'"}
_LINK_OPENERS = ("<http", "<@", "<#", "<!", "<mailto:")
_URL_PREFIXES = ("http://", "https://")


def _opens_quote(current: list[str]) -> bool:
    """A quote only opens a quoted value at the start of a token."""
    tail = "".join(current).rstrip()
    return not tail or tail.endswith("|")


def _inside_url_value(current: list[str], next_char: str) -> bool:
    """A comma directly followed by text continues a bare URL in the current value slot."""
    if not next_char or next_char.isspace():
        return False
    slot = "".join(current).rsplit("|", 1)[-1].strip()
    return slot.lower().startswith(_URL_PREFIXES) and not any(c.isspace() for c in slot)


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on ``sep`` outside quotes and bracket pairs.

    Scans character by character so separators inside ``"..."``,
    ``[...]``, ``{...}`` or Slack ``<url|label>`` links stay intact. A
    comma inside a bare ``http...`` value, with no space after it, stays
    part of the URL.
    """
    parts: list[str] = []
    current: list[str] = []
    stack: list[str] = []
    quote: str | None = None
    for i, ch in enumerate(text):
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in _QUOTES and not stack and _opens_quote(current):
            quote = ch
        elif ch in _PAIRS:
            stack.append(_PAIRS[ch])
        elif ch == "<" and text.startswith(_LINK_OPENERS, i):
            stack.append(">")
        elif stack and ch == stack[-1]:
            stack.pop()
        elif ch == sep and not stack and not (sep == "," and _inside_url_value(current, text[i + 1 : i + 2])):
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
        return value[1:-1]
    return value


def _strip_brackets(text: str) -> str:
    text = text.strip()
    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end > start:
        return text[start + 1 : end]
    return text


def parse_buttons(text: str) -> list[ButtonSpec]:
    """Parse ``[Label|value|style, ...]`` into button specs."""
    buttons: list[ButtonSpec] = []
    for i, item in enumerate(p for p in split_top_level(_strip_brackets(text)) if p):
        parts = [_unquote(p) for p in split_top_level(item, "|")]
        label = parts[0]
        if not label:
            continue
        value = parts[1] if len(parts) > 1 and parts[1] else f"button_{i}"
        style = parts[2].lower() if len(parts) > 2 and parts[2].lower() in _BUTTON_STYLES else None
        buttons.append(ButtonSpec(label=label, value=value, style=style))
    return buttons


def parse_image(text: str) -> ImageRef | None:
    """Parse ``url|alt``, ``url | altText:alt`` or ``url altText:alt``."""
    text = text.strip()
    if not text:
        return None
    if "|" in text:
        url, _, alt = text.partition("|")
    elif "altText:" in text:
        url, _, alt = text.partition("altText:")
        alt = "altText:" + alt
    else:
        url, alt = text, ""
    url = url.strip().strip("<>")
    alt = alt.strip()
    if alt.startswith("altText:"):
        alt = alt[len("altText:") :].strip()
    if not url:
        return None
    return ImageRef(url=url, alt_text=alt or "Image")


def parse_fields(text: str) -> list[FieldItem]:
    """Parse ``[Title|Value, ...]`` or newline separated ``Title: Value`` lines."""
    fields: list[FieldItem] = []
    if "[" in text and "|" in text:
        for item in split_top_level(_strip_brackets(text)):
            if not item:
                continue
            parts = [_unquote(p) for p in split_top_level(item, "|")]
            fields.append(FieldItem(title=parts[0], value=parts[1] if len(parts) > 1 else ""))
        return fields
    for line in text.splitlines():
        line = line.strip().lstrip("-* ").strip()
        if not line:
            continue
        title, sep, value = line.partition(":")
        if sep:
            fields.append(FieldItem(title=title.strip().strip("*"), value=value.strip()))
        else:
            fields.append(FieldItem(title=line, value=""))
    return fields


def parse_user_ids(text: str) -> list[str]:
    ids = _MENTION_RE.findall(text)
    if ids:
        return ids
    return [p.strip() for p in text.split(",") if _PLAIN_USER_ID_RE.match(p.strip())]


def _extract_color(content: str) -> tuple[str, str | None]:
    match = _COLOR_PARAM_RE.search(content)
    if not match:
        return content, None
    return (content[: match.start()] + content[match.end() :]).strip(), match.group(1)


def _parse_block(kind: BlockKind, content: str) -> RenderBlock | None:
    content, color = _extract_color(content)

    if kind == BlockKind.DIVIDER:
        return RenderBlock(kind=kind, color=color)

    if kind == BlockKind.HEADER:
        text = " ".join(content.split())
        return RenderBlock(kind=kind, text=text, color=color) if text else None

    if kind == BlockKind.SECTION:
        match = _SECTION_IMAGE_RE.search(content)
        if match:
            image = ImageRef(url=match.group(1).strip("<>"), alt_text=(match.group(2) or "").strip() or "Image")
            text = content[: match.start()].strip()
            return RenderBlock(kind=BlockKind.SECTION_WITH_IMAGE, text=text, images=[image], color=color)
        return RenderBlock(kind=kind, text=content, color=color) if content else None

    if kind == BlockKind.SECTION_WITH_IMAGE:
        parts = split_top_level(content, "|")
        text = parts[0]
        rest = [p for p in parts[1:] if p]
        url = ""
        alt = "Image"
        if rest:
            url = rest[0]
            if url.lower().startswith("image:"):
                url = url[len("image:") :].strip()
            if len(rest) > 1:
                alt = rest[1].replace("altText:", "").strip() or "Image"
        if not url:
            return RenderBlock(kind=BlockKind.SECTION, text=text, color=color) if text else None
        return RenderBlock(kind=kind, text=text, images=[ImageRef(url=url.strip("<>"), alt_text=alt)], color=color)

    if kind == BlockKind.CONTEXT:
        return RenderBlock(kind=kind, text=content, color=color) if content else None

    if kind == BlockKind.IMAGE:
        image = parse_image(content)
        return RenderBlock(kind=kind, images=[image], color=color) if image else None

    if kind == BlockKind.CONTEXT_WITH_IMAGES:
        match = _IMAGES_PARAM_RE.search(content)
        images: list[ImageRef] = []
        text = content
        if match:
            text = content[: match.start()].strip()
            for item in split_top_level(match.group(1)):
                image = parse_image(item)
                if image:
                    images.append(image)
        return RenderBlock(kind=kind, text=text, images=images, color=color)

    if kind == BlockKind.USER_CONTEXT:
        parts = split_top_level(content, "|")
        description = " | ".join(p for p in parts[1:] if p)
        return RenderBlock(kind=kind, text=description, user_ids=parse_user_ids(parts[0]), color=color)

    if kind == BlockKind.BUTTONS:
        buttons = parse_buttons(content)
        return RenderBlock(kind=kind, buttons=buttons, color=color) if buttons else None

    if kind == BlockKind.FIELDS:
        fields = parse_fields(content)
        return RenderBlock(kind=kind, fields=fields, color=color) if fields else None

    return None


def parse(source_text: str) -> list[RenderBlock]:
    """Parse DSL text into render blocks, in declaration order."""
    text = (source_text or "").strip()
    if not text:
        return []

    matches = list(_BLOCK_RE.finditer(text))
    if not matches:
        return [RenderBlock(kind=BlockKind.SECTION, text=text)]

    blocks: list[RenderBlock] = []
    leading = text[: matches[0].start()].strip()
    if leading:
        blocks.append(RenderBlock(kind=BlockKind.SECTION, text=leading))

    for match in matches:
        raw_type, content = match.group(1), match.group(2).strip()
        kind = _BLOCK_TYPES.get(raw_type.lower())
        if kind is None:
            logger.warning("Skipping unknown block type '#%s'", raw_type)
            continue
        try:
            block = _parse_block(kind, content)
        except Exception:
            logger.exception("Malformed #%s block, falling back to plain section", raw_type)
            remaining = text[match.start() :].strip()
            blocks.append(RenderBlock(kind=BlockKind.SECTION, text=remaining))
            break
        if block is None:
            logger.debug("Dropping empty #%s block", raw_type)
            continue
        blocks.append(block)
    return blocks


def coerce_buttons(value: Any) -> list[ButtonSpec]:
    """Accept buttons from tool parameters in any of the shapes models produce.

    Strings (``"Yes"`` or the bracket syntax), or objects with
    ``text``/``label``, ``value``/``url``, ``style`` and ``action_id``.
    """
    if value is None:
        return []
    if isinstance(value, str):
        return parse_buttons(value)
    if isinstance(value, dict):
        value = [value]
    buttons: list[ButtonSpec] = []
    for i, item in enumerate(value if isinstance(value, Iterable) else []):
        if isinstance(item, str):
            if "|" in item:
                buttons.extend(parse_buttons(item))
            elif item.strip():
                buttons.append(ButtonSpec(label=item.strip(), value=item.strip()))
            continue
        if not isinstance(item, dict):
            continue
        label = str(item.get("text") or item.get("label") or item.get("title") or "").strip()
        if not label:
            continue
        value_ = item.get("url") or item.get("value") or f"button_{i}"
        style = str(item.get("style") or "").lower() or None
        if style not in _BUTTON_STYLES:
            style = None
        action_id = item.get("action_id") or item.get("actionId")
        buttons.append(ButtonSpec(label=label, value=str(value_), style=style, action_id=action_id))
    return buttons


def coerce_fields(value: Any) -> list[FieldItem]:
    if value is None:
        return []
    if isinstance(value, str):
        return parse_fields(value)
    if isinstance(value, dict):
        if "title" in value or "value" in value:
            value = [value]
        else:
            return [FieldItem(title=str(k), value=str(v)) for k, v in value.items()]
    fields: list[FieldItem] = []
    for item in value:
        if isinstance(item, dict):
            fields.append(FieldItem(title=str(item.get("title") or ""), value=str(item.get("value") or "")))
        elif isinstance(item, str) and item.strip():
            title, _, rest = item.partition(":")
            fields.append(FieldItem(title=title.strip(), value=rest.strip()))
    return fields


def coerce_images(value: Any) -> list[ImageRef]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    images: list[ImageRef] = []
    for item in value:
        if isinstance(item, str):
            image = parse_image(item)
        elif isinstance(item, dict) and item.get("url"):
            image = ImageRef(
                url=str(item["url"]),
                alt_text=str(item.get("alt_text") or item.get("altText") or item.get("alt") or "Image"),
            )
        else:
            image = None
        if image:
            images.append(image)
    return images
