"""Robust JSON recovery from LLM responses.

Models wrap JSON in prose and code fences, emit arithmetic instead of
numbers and pad integers with zeros. ``normalize_json`` peels those layers
off and returns text that a strict parser has a fair chance of accepting;
``load_json_tree`` parses it into plain dicts and lists for the caller to
validate.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 400
FENCE = "```"

_DIVISION_RE = re.compile(r":\s*([0-9]+(?:\.[0-9]+)?)\s*/\s*([0-9]+(?:\.[0-9]+)?)")
_LEADING_ZERO_RE = re.compile(r":\s*0+(\d+)(?=[,}\]\s])")
_LINE_ITEMS_RE = re.compile(r'"lineItems"\s*:\s*\[', re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_FOUR_PLACES = Decimal("0.0001")


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit]


def _first_container_index(text: str) -> int:
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    return min(starts) if starts else -1


def _extract_balanced(text: str) -> str | None:
    """Return the balanced ``{...}`` or ``[...]`` starting at the first opener.

    Brackets inside string literals do not count. Only balance is checked;
    the slice is not parsed here.
    """
    start = _first_container_index(text)
    if start < 0:
        return None

    open_ch = text[start]
    close_ch = "}" if open_ch == "{" else "]"
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]

        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
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


def _strip_comments_and_trailing_commas(text: str) -> str:
    out: list[str] = []
    i = 0
    n = len(text)
    in_string = False
    escape = False

    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            newline = text.find("\n", i)
            i = n if newline < 0 else newline
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end < 0 else end + 2
        elif ch == ",":
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] in "}]":
                i += 1
            else:
                out.append(ch)
                i += 1
        else:
            out.append(ch)
            i += 1

    return "".join(out)


def _scan_first_value(text: str) -> str | None:
    """Tolerant fallback: parse the first complete object or array in *text*."""
    cleaned = _strip_comments_and_trailing_commas(text)
    decoder = json.JSONDecoder()
    index = _first_container_index(cleaned)
    while index >= 0:
        try:
            _, end = decoder.raw_decode(cleaned, index)
        except json.JSONDecodeError:
            nxt = _first_container_index(cleaned[index + 1 :])
            index = -1 if nxt < 0 else index + 1 + nxt
            continue
        return cleaned[index:end]
    return None


def recover_json_text(raw: str) -> str | None:
    """Locate the JSON value inside *raw*, or ``None`` if there is nothing JSON-shaped."""
    fence_start = raw.find(FENCE)
    if fence_start >= 0:
        fence_end = raw.find(FENCE, fence_start + len(FENCE))
        if fence_end > fence_start:
            inner = raw[fence_start + len(FENCE) : fence_end].strip()
            if inner[:4].lower() == "json":
                inner = inner[4:].strip()
            recovered = recover_json_text(inner)
            if recovered is not None:
                return recovered

    start = _first_container_index(raw)
    if start < 0:
        return None

    tail = raw[start:]
    balanced = _extract_balanced(tail)
    if balanced is not None:
        return balanced

    return _scan_first_value(tail)


def _format_quotient(left: str, right: str) -> str | None:
    try:
        numerator = Decimal(left)
        denominator = Decimal(right)
    except InvalidOperation:
        return None
    if denominator == 0:
        return None
    value = (numerator / denominator).quantize(_FOUR_PLACES, rounding=ROUND_HALF_UP)
    return format(value.normalize(), "f")


def repair_json(text: str) -> str:
    """Rewrite ``141.9 / 70.95`` into its quotient and drop leading zeros from integers."""
    if not text:
        return text

    def _divide(match: re.Match[str]) -> str:
        quotient = _format_quotient(match.group(1), match.group(2))
        if quotient is None:
            return match.group(0)
        return f": {quotient}"

    fixed = _DIVISION_RE.sub(_divide, text)
    return _LEADING_ZERO_RE.sub(r": \1", fixed)


def normalize_json(raw: str) -> str:
    if not raw or not raw.strip():
        return raw

    trimmed = raw.strip()
    recovered = recover_json_text(trimmed)
    if recovered is None:
        logger.warning("LLM returned non-JSON content. Preview: %s", preview(trimmed))
        return repair_json(trimmed)
    return repair_json(recovered)


def load_json_tree(text: str) -> Any:
    """Parse *text* strictly, then once more tolerating comments and trailing commas.

    Floats come back as ``Decimal``. Raises ``ValueError`` when neither pass works.
    """
    try:
        return json.loads(text, parse_float=Decimal)
    except json.JSONDecodeError:
        return json.loads(_strip_comments_and_trailing_commas(text), parse_float=Decimal)


def extract_json(text: str) -> dict | list | None:
    """Recover, repair and parse the first JSON object or array in *text*."""
    if not text or not text.strip():
        return None
    try:
        value = load_json_tree(normalize_json(text))
    except ValueError:
        return None
    return value if isinstance(value, (dict, list)) else None


def remove_line_items(json_text: str) -> str:
    """Replace the ``lineItems`` array with ``null``.

    Nested line items are where models most often break the JSON, so this
    gives a second chance to the header fields.
    """
    if not json_text or not json_text.strip():
        return json_text

    match = _LINE_ITEMS_RE.search(json_text)
    if match is None:
        return json_text

    index = match.start()
    bracket = match.end() - 1
    depth = 0
    in_string = False
    escape = False
    for i in range(bracket, len(json_text)):
        ch = json_text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                rebuilt = json_text[:index] + '"lineItems": null' + json_text[i + 1 :]
                return _TRAILING_COMMA_RE.sub(r"\1", rebuilt)

    return json_text
