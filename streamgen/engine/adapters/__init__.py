# Model-execution engine adapters
#
# Each adapter implements a common interface for:
#   - Tokenizing text and rendering tokens back to text
#   - Evaluating tokens into its context (KV cache) and sampling the next one
#   - Optionally rendering chat messages with a native template
#
# The generation controller uses adapters to stay engine-agnostic.

from .base import BaseEngineAdapter

__all__ = ["BaseEngineAdapter"]
