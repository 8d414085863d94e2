"""
streamgen - streaming text generation on top of any token-level engine.

This package turns a model-execution engine (tokenize / decode / sample) into
text and chat completions with stop sequences, incremental streaming,
cancellation, chat templates and tool call extraction.

Quick Start:
    from streamgen import ChatEngine, GenerationRequest

    engine = ChatEngine(my_adapter)
    result = engine.run_completion(
        GenerationRequest(prompt="Once upon a time", max_new_tokens=64, stop=("\\n\\n",)),
        sink=lambda fragment, is_final: print(fragment, end="") or True,
    )

Submodules:
    - streamgen.engine.generation: GenerationController (token loop)
    - streamgen.engine.chat_engine: ChatEngine, EngineConfig
    - streamgen.engine.stop: StopMatcher
    - streamgen.engine.chat_format / registry: chat template dialects
    - streamgen.engine.tool_parser: tool call extraction
"""

from streamgen._version import __version__

from streamgen.engine.adapters.base import BaseEngineAdapter
from streamgen.engine.chat_engine import ChatEngine, EngineConfig
from streamgen.engine.chat_types import ChatMessage, ToolCall, ToolDefinition
from streamgen.engine.generation import GenerationController
from streamgen.engine.registry import get_formatter, list_template_names, register_formatter
from streamgen.engine.stop import StopMatcher
from streamgen.engine.tool_parser import extract_tool_call, parse_tool_calls_envelope
from streamgen.engine.types import (
    CompletionResult,
    GenerationError,
    GenerationRequest,
    InferenceFailureError,
    InvalidParamError,
    ModelNotReadyError,
    SamplingParams,
)

__all__ = [
    # Version
    "__version__",
    # Engine
    "BaseEngineAdapter",
    "ChatEngine",
    "EngineConfig",
    "GenerationController",
    # Requests / results
    "GenerationRequest",
    "SamplingParams",
    "CompletionResult",
    "ChatMessage",
    "ToolCall",
    "ToolDefinition",
    # Errors
    "GenerationError",
    "InvalidParamError",
    "ModelNotReadyError",
    "InferenceFailureError",
    # Text utilities
    "StopMatcher",
    "get_formatter",
    "list_template_names",
    "register_formatter",
    "extract_tool_call",
    "parse_tool_calls_envelope",
]
