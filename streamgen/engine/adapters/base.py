"""Base adapter interface for model-execution engines."""

from abc import ABC, abstractmethod
from typing import Any, Sequence

from ..types import SamplingParams


class BaseEngineAdapter(ABC):
    """
    Abstract base class for model-execution engines.

    The generation controller drives an adapter token by token and never
    touches tensors, vocabularies or sampler internals itself. An adapter owns
    exactly one context (KV cache); the controller serializes access to it.
    """

    @property
    def is_ready(self) -> bool:
        """Whether a model and context are loaded and usable."""
        return True

    @property
    @abstractmethod
    def eos_token_id(self) -> int | None:
        """End-of-sequence token id, or None if the vocabulary has none."""
        pass

    @abstractmethod
    def tokenize(self, text: str) -> list[int]:
        """
        Convert text into token ids.

        Args:
            text: Input text.

        Returns:
            Token ids (may be empty).
        """
        pass

    @abstractmethod
    def decode(self, token_ids: Sequence[int], position: int) -> bool:
        """
        Feed tokens into the context starting at `position`.

        Args:
            token_ids: Tokens to evaluate, in order.
            position: Context position of the first token.

        Returns:
            True on success, False if the engine failed to evaluate the batch.
        """
        pass

    @abstractmethod
    def sample(
        self,
        params: SamplingParams,
        *,
        grammar: str | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> int:
        """
        Sample the next token from the logits of the last decoded position.

        Args:
            params: Sampling parameters (temperature, top_p, top_k, min_p, seed).
            grammar: Optional grammar constraining the output.
            json_schema: Optional JSON schema constraining the output.

        Returns:
            The sampled token id.
        """
        pass

    @abstractmethod
    def token_to_text(self, token_id: int) -> str:
        """Render one token as a text fragment (control tokens may render as "")."""
        pass

    @abstractmethod
    def context_window_size(self) -> int:
        """Maximum number of positions in the context."""
        pass

    @abstractmethod
    def clear_kv_cache(self) -> None:
        """Forget every previously decoded position."""
        pass

    def apply_chat_template(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
        template_name: str = "",
        add_generation_prompt: bool = True,
    ) -> str | None:
        """
        Render messages with the engine's native chat template.

        Default implementation has no native renderer; returning None makes
        callers use the built-in formatters. Raise ValueError when the
        messages or tools cannot be rendered.
        """
        return None

    @property
    def model_info(self) -> dict[str, Any]:
        """Metadata about the loaded model (e.g. 'model_path', 'n_ctx')."""
        return {}

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
