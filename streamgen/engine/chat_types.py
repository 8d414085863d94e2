"""Core chat message/tool types and streaming event types.

These types are internal to the library and are intentionally decoupled from:
- HTTP transport (FastAPI / SSE)
- OpenAI request/response JSON envelopes

JSON payloads only exist at the boundary: the `*_from_json` / `*_to_json`
helpers below are the single place where dynamic values become typed ones.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from .types import (
    CompletionResult,
    FinishReason,
    GenerationRequest,
    InvalidParamError,
    SamplingParams,
)


JsonValue = Union[str, int, float, bool, None, list["JsonValue"], dict[str, "JsonValue"]]

Role = Literal["system", "user", "assistant", "tool"]
_ROLES = ("system", "user", "assistant", "tool")


@dataclass(frozen=True)
class ToolCall:
    """A parsed tool call (function name + raw JSON arguments text)."""

    id: str
    name: str
    arguments: str = "{}"
    type: Literal["function"] = "function"

    def parsed_arguments(self) -> Any:
        return json.loads(self.arguments)


@dataclass(frozen=True)
class ToolDefinition:
    """A function the model may call."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ChatMessage:
    """A normalized chat message.

    Notes:
    - `tool_calls` is only meaningful for assistant messages.
    - `tool_call_id` is only meaningful for tool messages (tool outputs).
    """

    role: Role
    content: str = ""
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class DeltaEvent:
    """Streamed text delta."""

    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    """Tool calls parsed from a finished completion."""

    tool_calls: list[ToolCall]


@dataclass(frozen=True)
class FinalEvent:
    """Terminal event for a generation."""

    finish_reason: FinishReason
    usage: Usage
    result: CompletionResult


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal error event."""

    message: str
    kind: str = "general"


StreamEvent = Union[DeltaEvent, ToolCallEvent, FinalEvent, ErrorEvent]


# ---------------------------------------------------------------------------
# JSON boundary conversion
# ---------------------------------------------------------------------------


def _coerce_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    # Minimal support for OpenAI "content parts" format (text-only).
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict) or part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    raise InvalidParamError("Unsupported message content type.")


def tool_call_from_json(payload: Any) -> ToolCall:
    from .tool_parser import ToolCallParseError, make_call_id

    if not isinstance(payload, dict):
        raise ToolCallParseError("Each tool_call must be an object.")
    if payload.get("type", "function") != "function":
        raise ToolCallParseError("Unsupported tool call type.")

    fn = payload.get("function")
    if not isinstance(fn, dict):
        raise ToolCallParseError("tool_call.function must be an object.")

    name = fn.get("name")
    if not isinstance(name, str) or not name:
        raise ToolCallParseError("tool_call.function.name must be a non-empty string.")

    arguments = fn.get("arguments")
    if arguments is None:
        arguments = "{}"
    elif not isinstance(arguments, str):
        arguments = json.dumps(arguments, ensure_ascii=False)

    call_id = payload.get("id")
    if not isinstance(call_id, str) or not call_id:
        call_id = make_call_id(name)

    return ToolCall(id=call_id, name=name, arguments=arguments)


def tool_call_to_json(tc: ToolCall) -> dict[str, Any]:
    return {
        "id": tc.id,
        "type": tc.type,
        "function": {"name": tc.name, "arguments": tc.arguments},
    }


def message_from_json(payload: Any) -> ChatMessage:
    from .tool_parser import ToolCallParseError

    if not isinstance(payload, dict):
        raise InvalidParamError("Each message must be an object.")

    role = payload.get("role")
    if role not in _ROLES:
        raise InvalidParamError(f"Invalid message role: {role!r}.")

    content = _coerce_content(payload.get("content"))

    name = payload.get("name")
    if name is not None and not isinstance(name, str):
        raise InvalidParamError("'name' must be a string.")

    tool_call_id = payload.get("tool_call_id") if role == "tool" else None
    if tool_call_id is not None and not isinstance(tool_call_id, str):
        raise InvalidParamError("'tool_call_id' must be a string.")

    tool_calls: list[ToolCall] = []
    raw_tool_calls = payload.get("tool_calls")
    if role == "assistant" and raw_tool_calls is not None:
        if not isinstance(raw_tool_calls, list):
            raise InvalidParamError("'tool_calls' must be a list.")
        try:
            tool_calls = [tool_call_from_json(tc) for tc in raw_tool_calls]
        except ToolCallParseError as exc:
            raise InvalidParamError(f"Invalid tool_call: {exc}") from exc

    return ChatMessage(
        role=role,
        content=content,
        name=name,
        tool_call_id=tool_call_id,
        tool_calls=tuple(tool_calls),
    )


def message_to_json(message: ChatMessage) -> dict[str, Any]:
    out: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.name:
        out["name"] = message.name
    if message.role == "tool" and message.tool_call_id:
        out["tool_call_id"] = message.tool_call_id
    if message.role == "assistant" and message.tool_calls:
        out["tool_calls"] = [tool_call_to_json(tc) for tc in message.tool_calls]
    return out


def tool_from_json(payload: Any) -> ToolDefinition:
    """Parse an OpenAI-style tool definition.

    Accepts `{"type": "function", "function": {...}}` and the bare
    `{"name": ..., "parameters": ...}` form.
    """
    from .tool_parser import ToolCallParseError

    if not isinstance(payload, dict):
        raise ToolCallParseError("Each tool must be an object.")

    fn = payload
    if "function" in payload or "type" in payload:
        if payload.get("type") != "function":
            raise ToolCallParseError("Unsupported tool type.")
        fn = payload.get("function")
        if not isinstance(fn, dict):
            raise ToolCallParseError("Missing tool function.")

    name = fn.get("name")
    if not isinstance(name, str) or not name:
        raise ToolCallParseError("Tool function name must be a non-empty string.")

    description = fn.get("description") or ""
    if not isinstance(description, str):
        raise ToolCallParseError("Tool description must be a string.")

    parameters = fn.get("parameters")
    if parameters is None:
        parameters = {"type": "object", "properties": {}}
    if not isinstance(parameters, dict):
        raise ToolCallParseError("Tool parameters must be a JSON schema object.")

    return ToolDefinition(name=name, description=description, parameters=parameters)


def tool_to_json(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def _number(payload: dict[str, Any], key: str, default: float) -> float:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidParamError(f"'{key}' must be a number.")
    return value


def _top_k(payload: dict[str, Any], default: int) -> int:
    value = _number(payload, "top_k", default)
    if not math.isfinite(value):
        raise InvalidParamError("'top_k' must be a finite number.")
    return int(value)


def request_from_json(payload: Any, *, stream_default: bool = False) -> GenerationRequest:
    """Build a GenerationRequest from an OpenAI/llama.cpp-server style body.

    Raises:
        InvalidParamError: If a field has the wrong type.
    """
    from .tool_parser import ToolCallParseError

    if not isinstance(payload, dict):
        raise InvalidParamError("Request body must be a JSON object.")

    messages = None
    raw_messages = payload.get("messages")
    if raw_messages is not None:
        if not isinstance(raw_messages, list):
            raise InvalidParamError("'messages' must be a list.")
        messages = tuple(message_from_json(m) for m in raw_messages)

    prompt = payload.get("prompt")
    if prompt is not None and not isinstance(prompt, (str, list)):
        raise InvalidParamError("'prompt' must be a string or a list.")

    defaults = SamplingParams()
    seed = payload.get("seed", defaults.seed)
    if seed is None:
        seed = defaults.seed
    if isinstance(seed, bool) or not isinstance(seed, int):
        raise InvalidParamError("'seed' must be an integer.")
    sampling = SamplingParams(
        temperature=_number(payload, "temperature", defaults.temperature),
        top_p=_number(payload, "top_p", defaults.top_p),
        top_k=_top_k(payload, defaults.top_k),
        min_p=_number(payload, "min_p", defaults.min_p),
        seed=seed,
    )

    # n_predict (llama.cpp server) and max_tokens (OpenAI) are aliases.
    max_new_tokens = payload.get("n_predict")
    if max_new_tokens is None:
        max_new_tokens = payload.get("max_tokens")
    if max_new_tokens is None:
        max_new_tokens = -1
    if isinstance(max_new_tokens, bool) or not isinstance(max_new_tokens, int):
        raise InvalidParamError("'max_tokens' must be an integer.")

    stop = payload.get("stop") or []
    if isinstance(stop, str):
        stop = [stop]
    if not isinstance(stop, list):
        raise InvalidParamError("'stop' must be a string or list of strings.")
    stop = [s for s in stop if isinstance(s, str)]

    grammar = payload.get("grammar")
    if grammar is not None and not isinstance(grammar, str):
        raise InvalidParamError("'grammar' must be a string.")

    json_schema = payload.get("json_schema")
    response_format = payload.get("response_format")
    if json_schema is None and isinstance(response_format, dict):
        if response_format.get("type") == "json_schema":
            schema = response_format.get("json_schema")
            json_schema = schema.get("schema") if isinstance(schema, dict) else None
        elif response_format.get("type") == "json_object":
            json_schema = response_format.get("schema") or {"type": "object"}
    if json_schema is not None and not isinstance(json_schema, dict):
        raise InvalidParamError("'json_schema' must be an object.")

    raw_tools = payload.get("tools") or []
    if not isinstance(raw_tools, list):
        raise InvalidParamError("'tools' must be a list.")
    try:
        tools = tuple(tool_from_json(t) for t in raw_tools)
    except ToolCallParseError as exc:
        raise InvalidParamError(f"Invalid tool definition: {exc}") from exc

    tool_choice = payload.get("tool_choice")
    if tool_choice is None:
        tool_choice = "auto"

    template_name = payload.get("chat_template") or payload.get("template_name") or ""
    if not isinstance(template_name, str):
        raise InvalidParamError("'chat_template' must be a string.")

    use_template_engine = payload.get("use_jinja", payload.get("use_template_engine", True))

    model = payload.get("model")
    if model is not None and not isinstance(model, str):
        raise InvalidParamError("'model' must be a string.")

    return GenerationRequest(
        prompt=prompt if not isinstance(prompt, list) else tuple(prompt),
        messages=messages,
        sampling=sampling,
        max_new_tokens=max_new_tokens,
        stop=tuple(stop),
        ignore_eos=bool(payload.get("ignore_eos", False)),
        grammar=grammar,
        json_schema=json_schema,
        stream=bool(payload.get("stream", stream_default)),
        use_template_engine=bool(use_template_engine),
        template_name=template_name,
        tools=tools,
        tool_choice=tool_choice,
        model=model,
    )
