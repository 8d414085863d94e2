# Engine-agnostic streaming generation
#
# This package drives any model-execution engine through a small adapter
# interface and turns its token stream into completions.
#
# Key components:
#   - adapters/        Engine adapter interface
#   - generation.py    Token loop, stop handling, streaming, cancellation
#   - stop.py          Stop sequence matching
#   - chat_format.py   Built-in chat template dialects
#   - registry.py      Maps template names to dialects
#   - tool_parser.py   Tool call extraction from model output
#   - chat_engine.py   Text / chat completion entry points
#   - types.py         Request, result and error types
