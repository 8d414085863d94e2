"""Chat/text completion engine (single context, single-flight).

This module provides the reusable entry points on top of the generation
controller:
- request defaults + chat-specific validation
- messages -> prompt (engine template first, built-in dialects otherwise)
- tool call detection + parsing
- OpenAI-style chat response envelope
- async streaming via a worker thread

It deliberately contains no HTTP/FastAPI code.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Sequence

from .adapters.base import BaseEngineAdapter
from .chat_types import (
    ChatMessage,
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    StreamEvent,
    ToolCall,
    ToolCallEvent,
    ToolDefinition,
    Usage,
    message_to_json,
    tool_call_to_json,
    tool_to_json,
)
from .generation import GenerationController, Sink
from .registry import get_formatter
from .tool_parser import extract_tool_call, parse_tool_calls_envelope
from .types import CompletionResult, GenerationRequest, InvalidParamError, ModelNotReadyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits."""

    model_id: str = "streamgen"
    # Built-in dialect used when a request names none; "" means the plain
    # labeled-role transcript.
    default_template: str = ""
    use_template_engine: bool = True
    prompt_batch_size: int = 1
    reject_when_busy: bool = False
    max_prompt_tokens: int | None = None
    default_max_new_tokens: int = -1


def gen_chatcmplid() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


class ChatEngine:
    """Core completion engine.

    Thread-safety:
        The underlying adapter is not thread-safe. All generations go through
        one GenerationController, which serializes access (single-flight).
    """

    def __init__(self, adapter: BaseEngineAdapter, *, config: EngineConfig | None = None) -> None:
        self._adapter = adapter
        self._config = config or EngineConfig()
        self._controller = GenerationController(
            adapter,
            prompt_batch_size=self._config.prompt_batch_size,
            reject_when_busy=self._config.reject_when_busy,
            max_prompt_tokens=self._config.max_prompt_tokens,
        )
        self._warned_template_fallback = False

    @property
    def adapter(self) -> BaseEngineAdapter:
        return self._adapter

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def model_info(self) -> dict[str, Any]:
        return getattr(self._adapter, "model_info", {})

    @property
    def is_generating(self) -> bool:
        return self._controller.is_generating

    def cancel(self) -> None:
        """Stop the active generation (if any) before its next token."""
        self._controller.cancel()

    def shutdown(self) -> None:
        unload = getattr(self._adapter, "unload", None)
        if callable(unload):
            unload()

    def tokenize(self, content: str, *, with_pieces: bool = False) -> list[Any]:
        """Token ids for `content`.

        With `with_pieces=True` each entry is `{"id": ..., "piece": ...}`
        instead of a bare id. Does not touch the context, so it never waits
        behind an active generation.
        """
        if not isinstance(content, str):
            raise InvalidParamError("'content' must be a string.")
        if not self._adapter.is_ready:
            raise ModelNotReadyError("Model not initialized.")

        tokens = [int(t) for t in self._adapter.tokenize(content)]
        if not with_pieces:
            return tokens
        return [{"id": t, "piece": self._adapter.token_to_text(t)} for t in tokens]

    def detokenize(self, tokens: Sequence[int]) -> str:
        if not isinstance(tokens, (list, tuple)) or any(isinstance(t, bool) or not isinstance(t, int) for t in tokens):
            raise InvalidParamError("'tokens' must be a list of integers.")
        if not self._adapter.is_ready:
            raise ModelNotReadyError("Model not initialized.")

        try:
            return "".join(self._adapter.token_to_text(t) for t in tokens)
        except (KeyError, IndexError, ValueError) as exc:
            raise InvalidParamError(f"Unknown token id: {exc}") from exc

    # ------------------------------------------------------------------ helpers

    def _with_defaults(self, request: GenerationRequest) -> GenerationRequest:
        if request.max_new_tokens == -1 and self._config.default_max_new_tokens > 0:
            return dataclasses.replace(request, max_new_tokens=self._config.default_max_new_tokens)
        return request

    def _fail(self, exc: Exception, sink: Sink | None) -> CompletionResult:
        result = CompletionResult.failure(exc)
        logger.debug("Request rejected (%s): %s", result.error_kind, exc)
        if sink is not None:
            sink("", True)
        return result

    def _template_name(self, request: GenerationRequest) -> str:
        return request.template_name or self._config.default_template

    def _offered_tools(self, request: GenerationRequest) -> tuple[ToolDefinition, ...]:
        if request.tool_choice == "none":
            return ()
        return request.tools

    def _validate_chat(self, request: GenerationRequest) -> None:
        if not request.is_chat:
            raise InvalidParamError("'messages' is required for chat completions.")
        request.validate()

        if request.grammar is not None and request.json_schema is not None:
            raise InvalidParamError("'grammar' and 'json_schema' are mutually exclusive.")
        if self._offered_tools(request) and request.stream:
            raise InvalidParamError("Streaming is not supported together with 'tools'.")
        if request.tool_choice == "required" and not request.tools:
            raise InvalidParamError("tool_choice='required' but no tools were supplied in the request.")

    def _inject_tool_instruction(
        self,
        messages: list[ChatMessage],
        tools: Sequence[ToolDefinition],
        tool_choice: str,
    ) -> list[ChatMessage]:
        if not tools:
            return messages

        lines = ["You can call the following tools:"]
        lines.extend(json.dumps(tool_to_json(tool), ensure_ascii=False) for tool in tools)
        lines.append(
            "To call a tool, reply with a single JSON object of the form "
            '{"function": {"name": "<tool name>", "arguments": {...}}}.'
        )
        if tool_choice == "required":
            lines.append("You must call a tool for this response.")
        instruction = "\n".join(lines)

        # Formatters honour the first system message wherever it sits.
        for i, msg in enumerate(messages):
            if msg.role == "system":
                merged = dataclasses.replace(msg, content=(msg.content.rstrip() + "\n\n" + instruction).strip())
                return [*messages[:i], merged, *messages[i + 1 :]]
        return [ChatMessage(role="system", content=instruction), *messages]

    def _render_with_engine(self, request: GenerationRequest) -> str | None:
        tools = self._offered_tools(request)
        try:
            return self._adapter.apply_chat_template(
                [message_to_json(m) for m in request.messages or ()],
                tools=[tool_to_json(t) for t in tools] or None,
                tool_choice=request.tool_choice,
                template_name=self._template_name(request),
                add_generation_prompt=True,
            )
        except NotImplementedError:
            return None
        except ValueError as exc:
            raise InvalidParamError(f"Failed to apply chat template: {exc}") from exc

    def _render_fallback(self, request: GenerationRequest) -> str:
        messages = self._inject_tool_instruction(
            list(request.messages or ()),
            self._offered_tools(request),
            request.tool_choice,
        )
        return get_formatter(self._template_name(request)).format(messages)

    def _render_prompt(self, request: GenerationRequest) -> str:
        if request.use_template_engine and self._config.use_template_engine:
            rendered = self._render_with_engine(request)
            if rendered is not None:
                return rendered
            if not self._warned_template_fallback:
                logger.warning(
                    "Engine has no native chat template; using built-in %r formatter.",
                    self._template_name(request) or "plain",
                )
                self._warned_template_fallback = True
        return self._render_fallback(request)

    def _attach_tool_calls(self, result: CompletionResult, tools: Sequence[ToolDefinition]) -> None:
        calls = parse_tool_calls_envelope(result.content)
        if not calls:
            single = extract_tool_call(result.content)
            calls = [single] if single is not None else []

        names = {tool.name for tool in tools}
        accepted: list[ToolCall] = []
        for call in calls:
            if call.name not in names:
                logger.warning("Ignoring call to unknown tool %r.", call.name)
                continue
            accepted.append(call)

        if accepted:
            result.tool_calls = accepted
            if result.finish_reason != "cancelled":
                result.finish_reason = "tool_calls"

    def _chat_response(self, request: GenerationRequest, result: CompletionResult) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": result.content}
        if result.tool_calls:
            message["content"] = None
            message["tool_calls"] = [tool_call_to_json(tc) for tc in result.tool_calls]

        return {
            "id": gen_chatcmplid(),
            "object": "chat.completion",
            "created": int(time.time()),
            "model": request.model or self._config.model_id,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": result.finish_reason,
                }
            ],
            "usage": {
                "prompt_tokens": result.prompt_token_count,
                "completion_tokens": result.generated_token_count,
                "total_tokens": result.prompt_token_count + result.generated_token_count,
            },
        }

    # ------------------------------------------------------------------ entry points

    def run_completion(
        self,
        request: GenerationRequest,
        sink: Sink | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResult:
        """Raw text completion.

        Message requests are rendered with the built-in dialect named by
        `template_name` (no engine template, no tool handling).
        """
        request = self._with_defaults(request)
        if request.is_chat and request.prompt is None:
            try:
                request.validate()
                prompt = get_formatter(self._template_name(request)).format(request.messages or ())
            except Exception as exc:
                return self._fail(exc, sink)
            return self._controller.run(request, sink, prompt=prompt, cancel_event=cancel_event)
        return self._controller.run(request, sink, cancel_event=cancel_event)

    def run_chat_completion(
        self,
        request: GenerationRequest,
        sink: Sink | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResult:
        """Chat completion: render messages, generate, extract tool calls.

        On success `result.chat_response` holds the OpenAI-style
        `chat.completion` object.
        """
        request = self._with_defaults(request)
        try:
            self._validate_chat(request)
            prompt = self._render_prompt(request)
        except Exception as exc:
            return self._fail(exc, sink)

        result = self._controller.run(request, sink, prompt=prompt, cancel_event=cancel_event)
        if not result.success:
            return result

        tools = self._offered_tools(request)
        if tools:
            self._attach_tool_calls(result, tools)
        result.chat_response = self._chat_response(request, result)
        return result

    async def astream_completion(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Async iterator streaming events for a raw text completion."""
        async for event in self._astream(self.run_completion, request):
            yield event

    async def astream_chat(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Async iterator streaming events for a chat completion.

        Requests carrying tools are generated without incremental deltas (the
        whole output must be inspected for tool calls first); their text, if
        any, arrives as a single DeltaEvent before the FinalEvent.
        """
        async for event in self._astream(self.run_chat_completion, request):
            yield event

    async def _astream(
        self,
        run: Callable[..., CompletionResult],
        request: GenerationRequest,
    ) -> AsyncIterator[StreamEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        # Set when the consumer goes away; stops this run at its next token
        # boundary without touching other requests queued on the engine.
        closed = threading.Event()

        buffered = bool(request.tools) and request.tool_choice != "none"
        request = dataclasses.replace(request, stream=not buffered)

        def emit(event: StreamEvent | None) -> None:
            # Nobody is listening once the consumer closed; its loop may be gone.
            if not closed.is_set():
                loop.call_soon_threadsafe(queue.put_nowait, event)

        def sink(fragment: str, is_final: bool) -> bool:
            if not is_final and fragment:
                emit(DeltaEvent(fragment))
            return not closed.is_set()

        def worker() -> None:
            try:
                result = run(request, sink, cancel_event=closed)
                if not result.success:
                    emit(ErrorEvent(result.error_msg or "Generation failed.", kind=result.error_kind or "general"))
                    return

                if result.tool_calls:
                    emit(ToolCallEvent(list(result.tool_calls)))
                elif buffered and result.content:
                    emit(DeltaEvent(result.content))

                emit(
                    FinalEvent(
                        finish_reason=result.finish_reason,
                        usage=Usage(
                            prompt_tokens=result.prompt_token_count,
                            completion_tokens=result.generated_token_count,
                        ),
                        result=result,
                    )
                )
            except Exception as exc:
                emit(ErrorEvent(f"Generation failed: {exc}"))
            finally:
                emit(None)

        thread = threading.Thread(target=worker, name=f"streamgen-gen-{uuid.uuid4().hex}", daemon=True)
        thread.start()

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        except asyncio.CancelledError:
            closed.set()
            raise
        finally:
            # If the consumer stops early (disconnect / generator close), stop generation promptly.
            closed.set()
