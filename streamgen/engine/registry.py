"""Chat template registry.

Maps template names (and common aliases) to their formatter classes.
"""

from typing import Type

from .chat_format import (
    ChatFormatter,
    ChatMLFormatter,
    LabeledRoleFormatter,
    Llama2Formatter,
    MistralFormatter,
)

# Registry mapping template names to formatter classes
_FORMATTER_REGISTRY: dict[str, Type[ChatFormatter]] = {
    "llama2": Llama2Formatter,
    "llama-2": Llama2Formatter,
    "llama2-chat": Llama2Formatter,
    "mistral": MistralFormatter,
    "mistral-v1": MistralFormatter,
    "mistral-instruct": MistralFormatter,
    "chatml": ChatMLFormatter,
    "chat-ml": ChatMLFormatter,
    "qwen": ChatMLFormatter,
}


def get_formatter(template_name: str) -> ChatFormatter:
    """
    Get a formatter instance for the given template name.

    Args:
        template_name: Name of the chat template (e.g., "llama2", "chatml").
            Matching is case-insensitive.

    Returns:
        A formatter instance. Unknown names get the labeled-role transcript.
    """
    cls = _FORMATTER_REGISTRY.get(template_name.strip().lower(), LabeledRoleFormatter)
    return cls()


def register_formatter(template_name: str, formatter_cls: Type[ChatFormatter]) -> None:
    """
    Register a formatter for a template name.

    Args:
        template_name: Name of the chat template.
        formatter_cls: Formatter class (must inherit from ChatFormatter).
    """
    if not issubclass(formatter_cls, ChatFormatter):
        raise TypeError(f"{formatter_cls!r} must inherit from ChatFormatter")
    _FORMATTER_REGISTRY[template_name.strip().lower()] = formatter_cls


def list_template_names() -> list[str]:
    """Return list of registered template names."""
    return list(_FORMATTER_REGISTRY.keys())
