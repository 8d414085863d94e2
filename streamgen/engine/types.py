"""Engine request, result and state types.

These types are used by the generation controller and the chat layer.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Sequence, Union

if TYPE_CHECKING:
    from .chat_types import ChatMessage, Timing, ToolCall, ToolDefinition


ErrorKind = Literal["invalid_param", "model_not_ready", "inference_failure", "general"]
FinishReason = Literal["stop", "length", "tool_calls", "cancelled"]
ToolChoice = Literal["auto", "none", "required"]

# A prompt is plain text, a pre-tokenized sequence, or a mix of both.
Prompt = Union[str, Sequence[Union[int, str]]]

_TOOL_CHOICES = ("auto", "none", "required")


class GenerationError(Exception):
    """Base class for errors that end a generation call."""

    kind: ErrorKind = "general"


class InvalidParamError(GenerationError, ValueError):
    kind: ErrorKind = "invalid_param"


class ModelNotReadyError(GenerationError, RuntimeError):
    kind: ErrorKind = "model_not_ready"


class InferenceFailureError(GenerationError, RuntimeError):
    kind: ErrorKind = "inference_failure"


@dataclass(frozen=True)
class SamplingParams:
    """Sampling knobs forwarded verbatim to the engine's sampler."""

    temperature: float = 0.8
    top_p: float = 0.95
    top_k: int = 40
    min_p: float = 0.05
    seed: int = -1

    def validate(self) -> None:
        for name in ("temperature", "top_p", "top_k", "min_p"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidParamError(f"'{name}' must be a number.")
            if math.isnan(value) or value < 0:
                raise InvalidParamError(f"'{name}' must be >= 0.")
        if isinstance(self.seed, bool) or not isinstance(self.seed, int):
            raise InvalidParamError("'seed' must be an integer.")


@dataclass(frozen=True)
class GenerationRequest:
    """Immutable request for a text or chat completion.

    Exactly one of `prompt` or `messages` must be set.
    """

    prompt: Prompt | None = None
    messages: tuple[ChatMessage, ...] | None = None
    sampling: SamplingParams = field(default_factory=SamplingParams)
    max_new_tokens: int = -1
    stop: tuple[str, ...] = ()
    ignore_eos: bool = False
    grammar: str | None = None
    json_schema: dict[str, Any] | None = None
    stream: bool = False
    use_template_engine: bool = True
    template_name: str = ""
    tools: tuple[ToolDefinition, ...] = ()
    tool_choice: ToolChoice = "auto"
    model: str | None = None

    def __post_init__(self) -> None:
        # Normalize list inputs so the request stays hashable and immutable.
        if self.messages is not None and not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if isinstance(self.stop, str):
            object.__setattr__(self, "stop", (self.stop,))
        deduped: list[str] = []
        for s in self.stop:
            if s and s not in deduped:
                deduped.append(s)
        object.__setattr__(self, "stop", tuple(deduped))
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))
        if self.prompt is not None and not isinstance(self.prompt, str):
            object.__setattr__(self, "prompt", tuple(self.prompt))

    @property
    def is_chat(self) -> bool:
        return self.messages is not None

    def validate(self) -> None:
        """Raise InvalidParamError for malformed requests.

        Runs before any engine interaction.
        """
        has_prompt = self.prompt is not None
        has_messages = self.messages is not None
        if not has_prompt and not has_messages:
            raise InvalidParamError("No prompt provided: either 'prompt' or 'messages' is required.")
        if has_prompt and has_messages:
            raise InvalidParamError("'prompt' and 'messages' are mutually exclusive.")
        if has_messages and not self.messages:
            raise InvalidParamError("'messages' must be a non-empty list.")
        if has_prompt:
            _validate_prompt(self.prompt)

        self.sampling.validate()

        if isinstance(self.max_new_tokens, bool) or not isinstance(self.max_new_tokens, int):
            raise InvalidParamError("'max_new_tokens' must be an integer.")
        if self.max_new_tokens != -1 and self.max_new_tokens <= 0:
            raise InvalidParamError("'max_new_tokens' must be -1 (unbounded) or > 0.")

        if self.tool_choice not in _TOOL_CHOICES:
            raise InvalidParamError(
                f"'tool_choice' must be one of {', '.join(_TOOL_CHOICES)} (got {self.tool_choice!r})."
            )


def _validate_prompt(prompt: Any) -> None:
    if isinstance(prompt, str):
        return
    for item in prompt:
        if isinstance(item, bool) or not isinstance(item, (int, str)):
            raise InvalidParamError(
                "'prompt' must be a string, a list of token ids, or a list of mixed strings and token ids."
            )


@dataclass
class GenerationState:
    """Mutable per-call state, owned by exactly one in-flight generation."""

    n_ctx: int
    n_remaining: int
    prompt_tokens: list[int] = field(default_factory=list)
    generated_tokens: list[int] = field(default_factory=list)
    generated_text: str = ""
    sent_cursor: int = 0
    n_past: int = 0
    n_decoded: int = 0
    truncated: bool = False
    stop_found: bool = False
    stopping_word: str | None = None
    eos_reached: bool = False
    cancelled: bool = False

    @property
    def unsent(self) -> str:
        return self.generated_text[self.sent_cursor :]

    @property
    def finish_reason(self) -> FinishReason:
        if self.cancelled:
            return "cancelled"
        if self.stop_found or self.eos_reached:
            return "stop"
        return "length"


@dataclass
class CompletionResult:
    """Outcome of a completion call; errors are carried, never raised."""

    content: str = ""
    success: bool = True
    error_kind: ErrorKind | None = None
    error_msg: str | None = None
    prompt_token_count: int = 0
    generated_token_count: int = 0
    truncated: bool = False
    stop_found: bool = False
    stopping_word: str | None = None
    finish_reason: FinishReason = "stop"
    tokens: list[int] = field(default_factory=list)
    timing: Timing | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    chat_response: dict[str, Any] | None = None

    @classmethod
    def failure(cls, exc: BaseException) -> "CompletionResult":
        kind: ErrorKind = exc.kind if isinstance(exc, GenerationError) else "general"
        return cls(content="", success=False, error_kind=kind, error_msg=str(exc) or type(exc).__name__)
