"""Tool call parsing utilities.

Models without a dedicated tool-call syntax emit function calls as JSON
embedded in free text, e.g.

    Sure, let me check. {"function": {"name": "get_weather", "arguments": {"city": "Paris"}}}

or as an OpenAI-style envelope:

    {"tool_calls": [{"type": "function", "function": {"name": ..., "arguments": ...}}]}

We recover ToolCall objects from both shapes without requiring the whole
completion to be valid JSON.
"""

from __future__ import annotations

import json
import re
import time

from .chat_types import ToolCall, tool_call_from_json


class ToolCallParseError(ValueError):
    pass


_FUNCTION_MARKER = '"function"'
_NAME_MARKER = '"name"'
_ARGUMENTS_MARKER = '"arguments"'
_ENVELOPE_MARKER = '"tool_calls"'

_NAME_RE = re.compile(r'"name"\s*:\s*"([^"]*)"')

_EMPTY_ARGUMENTS = "{}"


def make_call_id(name: str) -> str:
    """Best-effort unique id; only used to correlate calls within one response."""
    return f"call_{name}_{time.time_ns()}"


def find_balanced_object(text: str, start: int) -> str | None:
    """Return the brace-balanced JSON object beginning at `text[start]`.

    Quotes toggle string mode and a backslash inside a string escapes the next
    character, so braces and quotes inside string literals are not counted.
    Returns None if `text[start]` is not '{' or the object never closes.
    """
    if start < 0 or start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
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
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : pos + 1]
    return None


def _extract_arguments(text: str) -> str:
    key = text.find(_ARGUMENTS_MARKER)
    if key == -1:
        return _EMPTY_ARGUMENTS

    cursor = key + len(_ARGUMENTS_MARKER)
    colon = text.find(":", cursor)
    if colon != -1 and not text[cursor:colon].strip():
        # OpenAI style: arguments is a JSON-encoded string.
        value_start = colon + 1
        while value_start < len(text) and text[value_start].isspace():
            value_start += 1
        if value_start < len(text) and text[value_start] == '"':
            try:
                decoded, _ = json.JSONDecoder().raw_decode(text, value_start)
            except ValueError:
                return _EMPTY_ARGUMENTS
            return decoded if isinstance(decoded, str) and decoded.strip() else _EMPTY_ARGUMENTS

    brace = text.find("{", cursor)
    if brace == -1:
        return _EMPTY_ARGUMENTS
    return find_balanced_object(text, brace) or _EMPTY_ARGUMENTS


def extract_tool_call(text: str) -> ToolCall | None:
    """Extract a single embedded function call from free text.

    Returns None unless both the "function" and "name" key markers are present
    and a name value can be read. Arguments default to "{}" when missing or
    unbalanced.
    """
    if _FUNCTION_MARKER not in text or _NAME_MARKER not in text:
        return None

    match = _NAME_RE.search(text)
    if match is None:
        return None
    name = match.group(1)

    return ToolCall(id=make_call_id(name), name=name, arguments=_extract_arguments(text))


def parse_tool_calls_envelope(text: str) -> list[ToolCall]:
    """Parse every call from an embedded {"tool_calls": [...]} object.

    Returns an empty list when no complete, valid envelope is present.
    """
    marker = text.find(_ENVELOPE_MARKER)
    if marker == -1:
        return []

    start = text.rfind("{", 0, marker)
    while start != -1:
        block = find_balanced_object(text, start)
        if block is not None and start + len(block) > marker:
            try:
                payload = json.loads(block)
            except ValueError:
                payload = None
            if isinstance(payload, dict) and isinstance(payload.get("tool_calls"), list):
                calls: list[ToolCall] = []
                for raw in payload["tool_calls"]:
                    try:
                        calls.append(tool_call_from_json(raw))
                    except ToolCallParseError:
                        continue
                return calls
        start = text.rfind("{", 0, start)
    return []
