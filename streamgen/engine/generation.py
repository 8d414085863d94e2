"""Streaming generation controller (single context, single-flight).

This module owns the token loop:
- prompt tokenization + ingestion into the engine context
- sample -> render -> decode, one token at a time
- stop sequences (exact and partial), EOS, length and context budgets
- incremental flushing to a synchronous sink
- cooperative cancellation

It deliberately contains no chat templating and no HTTP code.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Sequence

from .adapters.base import BaseEngineAdapter
from .chat_types import Timing
from .stop import StopMatcher
from .types import (
    CompletionResult,
    GenerationError,
    GenerationRequest,
    GenerationState,
    InferenceFailureError,
    InvalidParamError,
    ModelNotReadyError,
    Prompt,
)

logger = logging.getLogger(__name__)


# (fragment, is_final) -> keep going. Returning False stops generation; the
# return value of the final call is ignored.
Sink = Callable[[str, bool], Optional[bool]]


class _SinkChannel:
    """Tracks what was delivered to a sink so the terminal call happens once."""

    def __init__(self, sink: Sink | None) -> None:
        self._sink = sink
        self.closed = False
        self.stop_requested = False

    def flush(self, state: GenerationState) -> bool:
        """Send the unsent suffix of the generated text. Returns False to stop."""
        text = state.unsent
        state.sent_cursor = len(state.generated_text)
        if self._sink is None or not text:
            return True
        if self._sink(text, False) is False:
            self.stop_requested = True
            return False
        return True

    def close(self, text: str) -> None:
        if self._sink is None or self.closed:
            return
        self.closed = True
        self._sink(text, True)


class GenerationController:
    """Runs completions against one engine context.

    Thread-safety:
        The engine context (KV cache) is single-writer. Each call holds
        `self._lock` for its whole duration, so concurrent calls queue behind
        it, or fail fast with a `general` error when `reject_when_busy=True`.

    Cancellation:
        `cancel()` sets a flag that the decode loop checks once per token, so
        an active generation ends within one token's latency. Calling it while
        idle does nothing.
    """

    def __init__(
        self,
        adapter: BaseEngineAdapter,
        *,
        prompt_batch_size: int = 1,
        reject_when_busy: bool = False,
        max_prompt_tokens: int | None = None,
    ) -> None:
        if prompt_batch_size <= 0:
            raise ValueError("'prompt_batch_size' must be > 0.")
        self._adapter = adapter
        self._prompt_batch_size = int(prompt_batch_size)
        self._reject_when_busy = bool(reject_when_busy)
        self._max_prompt_tokens = max_prompt_tokens
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._active = False

    @property
    def adapter(self) -> BaseEngineAdapter:
        return self._adapter

    @property
    def is_generating(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active:
            self._cancel.set()

    def run(
        self,
        request: GenerationRequest,
        sink: Sink | None = None,
        *,
        prompt: Prompt | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResult:
        """Generate a completion for `prompt` (defaults to `request.prompt`).

        `cancel_event` stops this run only, at the next token boundary, whether
        or not the request streams.

        Never raises for request or engine problems: failures come back as a
        CompletionResult with success=False. When a sink is given it receives
        exactly one terminal call, `(full_text, True)` on success and
        `("", True)` on failure.
        """
        channel = _SinkChannel(sink)
        try:
            if prompt is None:
                prompt = request.prompt
            if prompt is None:
                raise InvalidParamError("No prompt provided.")
            request.validate()
            if not self._adapter.is_ready:
                raise ModelNotReadyError("Model not initialized.")

            if not self._lock.acquire(blocking=not self._reject_when_busy):
                raise GenerationError("Engine is busy with another generation.")
            try:
                self._cancel.clear()
                self._active = True
                return self._generate(request, prompt, channel, cancel_event)
            finally:
                self._active = False
                self._cancel.clear()
                self._lock.release()
        except Exception as exc:
            result = CompletionResult.failure(exc)
            if isinstance(exc, GenerationError):
                logger.debug("Generation failed (%s): %s", result.error_kind, exc)
            else:
                logger.warning("Generation failed unexpectedly: %r", exc)
            try:
                channel.close("")
            except Exception as sink_exc:
                logger.warning("Sink raised during terminal notification: %r", sink_exc)
            return result

    # ------------------------------------------------------------------ steps

    def _tokenize_prompt(self, prompt: Prompt) -> list[int]:
        if isinstance(prompt, str):
            return [int(t) for t in self._adapter.tokenize(prompt)]

        tokens: list[int] = []
        for item in prompt:
            if isinstance(item, str):
                tokens.extend(int(t) for t in self._adapter.tokenize(item))
            else:
                tokens.append(int(item))
        return tokens

    def _ingest_prompt(self, state: GenerationState) -> None:
        tokens = state.prompt_tokens
        batch = self._prompt_batch_size
        for start in range(0, len(tokens), batch):
            chunk: Sequence[int] = tokens[start : start + batch]
            if not self._adapter.decode(chunk, state.n_past):
                raise InferenceFailureError(f"Failed to process prompt (batch starting at token {start}).")
            state.n_past += len(chunk)

    def _generate(
        self,
        request: GenerationRequest,
        prompt: Prompt,
        channel: _SinkChannel,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResult:
        adapter = self._adapter
        started = time.monotonic()

        # Never let a previous request's positions leak into this one.
        adapter.clear_kv_cache()

        n_ctx = int(adapter.context_window_size())
        prompt_tokens = self._tokenize_prompt(prompt)
        if not prompt_tokens:
            raise InvalidParamError("Empty prompt.")
        if self._max_prompt_tokens is not None and len(prompt_tokens) > self._max_prompt_tokens:
            raise InvalidParamError(
                f"Prompt too long: {len(prompt_tokens)} tokens (max={self._max_prompt_tokens})."
            )
        if len(prompt_tokens) >= n_ctx:
            raise InvalidParamError(
                f"Prompt too long for context window ({len(prompt_tokens)} tokens, max context is {n_ctx})."
            )

        budget = n_ctx - len(prompt_tokens)
        n_remaining = request.max_new_tokens if request.max_new_tokens > 0 else budget
        state = GenerationState(n_ctx=n_ctx, n_remaining=n_remaining, prompt_tokens=prompt_tokens)

        self._ingest_prompt(state)
        prefill_done = time.monotonic()

        stops = StopMatcher(request.stop)
        eos_id = adapter.eos_token_id

        while state.n_remaining > 0:
            if self._cancel.is_set() or (cancel_event is not None and cancel_event.is_set()):
                state.cancelled = True
                logger.debug("Generation cancelled after %d tokens", state.n_decoded)
                break

            token_id = int(
                adapter.sample(request.sampling, grammar=request.grammar, json_schema=request.json_schema)
            )
            state.generated_text += adapter.token_to_text(token_id)
            state.generated_tokens.append(token_id)
            state.n_decoded += 1
            state.n_remaining -= 1

            if not adapter.decode([token_id], state.n_past):
                raise InferenceFailureError("Failed to decode generated token.")
            state.n_past += 1

            check = stops.check(state.generated_text, state.sent_cursor)
            if check.kind == "stop":
                state.generated_text = state.generated_text[: check.position]
                state.stop_found = True
                state.stopping_word = check.word
                logger.debug("Stop sequence %r matched at offset %d", check.word, check.position)
                break

            if check.kind == "none" and request.stream and not channel.flush(state):
                state.cancelled = True
                logger.debug("Sink requested stop after %d tokens", state.n_decoded)
                break

            if not request.ignore_eos and eos_id is not None and token_id == eos_id:
                state.eos_reached = True
                break

            if state.n_past >= n_ctx:
                state.truncated = True
                logger.debug("Context window full (%d positions)", n_ctx)
                break

        # Deliver anything still held back by a partial stop match, then the
        # terminal notification carrying the full text.
        if request.stream and not channel.stop_requested:
            channel.flush(state)
        channel.close(state.generated_text)

        ended = time.monotonic()
        decode_s = max(ended - prefill_done, 0.0)
        return CompletionResult(
            content=state.generated_text,
            success=True,
            prompt_token_count=len(prompt_tokens),
            generated_token_count=state.n_decoded,
            truncated=state.truncated,
            stop_found=state.stop_found,
            stopping_word=state.stopping_word,
            finish_reason=state.finish_reason,
            tokens=list(state.generated_tokens),
            timing=Timing(
                prefill_s=max(prefill_done - started, 0.0),
                decode_s=decode_s,
                total_s=max(ended - started, 0.0),
                tok_per_s=state.n_decoded / decode_s if decode_s > 0 and state.n_decoded else None,
            ),
        )
