"""streamgen inference server entrypoint (FastAPI + OpenAI-style completions).

Example:
    python -m apps.server.main --engine my_pkg.engines:load_llama \
        --engine-kwargs '{"model_path": "/models/llama-2-7b-chat.gguf"}' --template llama2 --port 8787

The engine factory is any importable callable returning a BaseEngineAdapter.
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import time
from typing import Any, Callable

from apps.server.app import create_app
from streamgen.engine.adapters.base import BaseEngineAdapter
from streamgen.engine.chat_engine import ChatEngine, EngineConfig
from streamgen.engine.types import GenerationRequest


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="streamgen inference server")
    p.add_argument(
        "--engine",
        required=True,
        help="Engine factory as 'module:callable' returning a BaseEngineAdapter",
    )
    p.add_argument(
        "--engine-kwargs",
        default="{}",
        help="JSON object of keyword arguments passed to the engine factory",
    )
    p.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")
    p.add_argument("--model-id", default=None, help="Model id reported by /v1/models (default: factory name)")

    p.add_argument(
        "--template",
        default="",
        help="Built-in chat dialect when the engine has no native template: llama2|mistral|chatml (default: plain)",
    )
    p.add_argument(
        "--no-template-engine",
        dest="use_template_engine",
        action="store_false",
        help="Always use the built-in chat dialects, even if the engine can render templates",
    )
    p.set_defaults(use_template_engine=True)
    p.add_argument(
        "--prompt-batch-size",
        type=int,
        default=1,
        help="Prompt tokens evaluated per decode call (default: 1)",
    )
    p.add_argument(
        "--max-prompt-tokens",
        type=int,
        default=0,
        help="Reject prompts longer than this many tokens (0 = context window only)",
    )
    p.add_argument(
        "--default-max-tokens",
        type=int,
        default=-1,
        help="Token budget for requests that set none (-1 = up to the context window)",
    )
    p.add_argument(
        "--reject-when-busy",
        action="store_true",
        help="Fail requests immediately instead of queueing while a generation runs",
    )

    p.add_argument(
        "--http-max-concurrency",
        type=int,
        default=0,
        help="Max in-flight completion requests (0 = unlimited)",
    )
    p.add_argument(
        "--warmup-decode-tokens",
        type=int,
        default=0,
        help="Generate this many tokens once at startup before serving (default: 0 = skip)",
    )
    p.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="uvicorn and streamgen log level (default: info)",
    )
    p.add_argument("--reload", action="store_true", help="Enable uvicorn reload (dev only)")
    return p.parse_args(argv)


def _load_factory(spec: str) -> Callable[..., BaseEngineAdapter]:
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"--engine must look like 'module:callable' (got {spec!r})")

    module = importlib.import_module(module_name)
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part)
    if not callable(factory):
        raise TypeError(f"{spec!r} is not callable")
    return factory


def _load_engine_kwargs(raw: str) -> dict[str, Any]:
    try:
        kwargs = json.loads(raw)
    except ValueError as exc:
        raise ValueError(f"--engine-kwargs must be valid JSON: {exc}") from exc
    if not isinstance(kwargs, dict):
        raise ValueError("--engine-kwargs must be a JSON object")
    return kwargs


def _run_blocking_warmup(*, engine: ChatEngine, decode_tokens: int) -> None:
    if decode_tokens <= 0:
        print("[warmup] skipped (warmup token count is 0)", flush=True)
        return

    t0 = time.time()
    print(f"[warmup] starting: decode_tokens={decode_tokens}", flush=True)
    result = engine.run_completion(GenerationRequest(prompt="Hello", max_new_tokens=int(decode_tokens)))
    if not result.success:
        raise RuntimeError(f"Warmup failed ({result.error_kind}): {result.error_msg}")
    dt = time.time() - t0
    print(f"[warmup] decode_steps_executed={result.generated_token_count} done in {dt:.2f}s", flush=True)


def _configure_logging(log_level: str) -> None:
    level = logging.DEBUG if log_level == "trace" else getattr(logging, log_level.upper())
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("streamgen").setLevel(level)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    _configure_logging(args.log_level)

    factory = _load_factory(args.engine)
    engine_kwargs = _load_engine_kwargs(args.engine_kwargs)
    print(f"[server] loading engine... factory={args.engine!r} kwargs={sorted(engine_kwargs)}", flush=True)
    adapter = factory(**engine_kwargs)
    if not isinstance(adapter, BaseEngineAdapter):
        raise TypeError(f"{args.engine!r} returned {type(adapter).__name__}, expected a BaseEngineAdapter")
    print(f"[server] engine loaded: n_ctx={adapter.context_window_size()}", flush=True)

    model_id = args.model_id or args.engine.partition(":")[2] or "streamgen"
    engine = ChatEngine(
        adapter,
        config=EngineConfig(
            model_id=model_id,
            default_template=args.template,
            use_template_engine=bool(args.use_template_engine),
            prompt_batch_size=args.prompt_batch_size,
            reject_when_busy=bool(args.reject_when_busy),
            max_prompt_tokens=None if args.max_prompt_tokens <= 0 else int(args.max_prompt_tokens),
            default_max_new_tokens=args.default_max_tokens,
        ),
    )

    _run_blocking_warmup(engine=engine, decode_tokens=int(args.warmup_decode_tokens))

    app = create_app(
        engine=engine,
        model_id=model_id,
        http_max_concurrency=None if args.http_max_concurrency <= 0 else int(args.http_max_concurrency),
    )

    import uvicorn

    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=args.log_level,
        )
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
