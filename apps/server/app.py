"""FastAPI app for OpenAI-style text and chat completions.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All generation is delegated to the core engine (`streamgen/engine`).
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from streamgen.engine.chat_engine import ChatEngine
from streamgen.engine.chat_types import (
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    StreamEvent,
    Timing,
    ToolCallEvent,
    Usage,
    request_from_json,
    tool_call_to_json,
)
from streamgen.engine.types import CompletionResult, GenerationError, GenerationRequest, InvalidParamError

_STATUS_BY_KIND = {
    "invalid_param": 400,
    "model_not_ready": 503,
    "inference_failure": 500,
    "general": 500,
}


def create_app(
    *,
    engine: ChatEngine,
    model_id: str,
    http_max_concurrency: int | None = None,
) -> FastAPI:
    app = FastAPI(title="streamgen Inference Server", version="0.1.0")

    http_semaphore: asyncio.Semaphore | None = None
    if http_max_concurrency is not None:
        try:
            http_max_concurrency = int(http_max_concurrency)
        except Exception as exc:
            raise ValueError("http_max_concurrency must be an integer") from exc
        if http_max_concurrency > 0:
            http_semaphore = asyncio.Semaphore(http_max_concurrency)
        elif http_max_concurrency < 0:
            raise ValueError("http_max_concurrency must be >= 0")

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, coro: Any) -> Any:
        task = asyncio.create_task(coro)
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        # Yield to let both tasks start (handles coroutines that return synchronously).
        await asyncio.sleep(0)
        done, pending = await asyncio.wait(
            {task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if disconnect_task in done:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    async def _try_acquire_semaphore() -> None:
        if http_semaphore is None:
            return
        try:
            await asyncio.wait_for(http_semaphore.acquire(), timeout=0.001)
        except TimeoutError as exc:
            raise HTTPException(status_code=429, detail="Server is busy") from exc

    def _release_semaphore() -> None:
        if http_semaphore is not None:
            http_semaphore.release()

    async def _read_json_object(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc

        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
        return payload

    async def _parse_request(request: Request, *, chat: bool) -> GenerationRequest:
        payload = await _read_json_object(request)

        req_model = payload.get("model")
        if req_model is not None and req_model != model_id:
            raise HTTPException(status_code=404, detail=f"Unknown model: {req_model}")

        if chat and not isinstance(payload.get("messages"), list):
            raise HTTPException(status_code=400, detail="'messages' must be a non-empty list.")
        if not chat and payload.get("prompt") is None and payload.get("messages") is None:
            raise HTTPException(status_code=400, detail="'prompt' is required.")

        try:
            return request_from_json(payload)
        except InvalidParamError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, Any]:
        ready = bool(getattr(engine.adapter, "is_ready", True))
        return {"status": "ok" if ready else "loading", "generating": engine.is_generating}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        now = int(time.time())
        return {
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": now,
                    "owned_by": "streamgen",
                    "meta": engine.model_info,
                }
            ],
        }

    # -------------------------------------------------------------------------
    # Tokenizer
    # -------------------------------------------------------------------------

    @app.post("/tokenize")
    async def tokenize(request: Request) -> dict[str, Any]:
        payload = await _read_json_object(request)
        try:
            tokens = engine.tokenize(payload.get("content"), with_pieces=bool(payload.get("with_pieces", False)))
        except GenerationError as exc:
            raise HTTPException(status_code=_STATUS_BY_KIND.get(exc.kind, 500), detail=str(exc)) from exc
        return {"tokens": tokens}

    @app.post("/detokenize")
    async def detokenize(request: Request) -> dict[str, Any]:
        payload = await _read_json_object(request)
        try:
            content = engine.detokenize(payload.get("tokens"))
        except GenerationError as exc:
            raise HTTPException(status_code=_STATUS_BY_KIND.get(exc.kind, 500), detail=str(exc)) from exc
        return {"content": content}

    # -------------------------------------------------------------------------
    # Completions
    # -------------------------------------------------------------------------

    @app.post("/v1/completions")
    async def completions(request: Request) -> Any:
        gen_req = await _parse_request(request, chat=False)
        created = int(time.time())
        cmpl_id = f"cmpl-{uuid.uuid4().hex}"

        await _try_acquire_semaphore()
        if gen_req.stream:
            event_iter = _stream_text_completion(
                events=engine.astream_completion(gen_req),
                model_id=model_id,
                created=created,
                cmpl_id=cmpl_id,
                request=request,
                release=_release_semaphore,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        try:
            result = await _run_with_disconnect_cancellation(
                request, _collect_result(engine.astream_completion(gen_req))
            )
        finally:
            _release_semaphore()

        resp: dict[str, Any] = {
            "id": cmpl_id,
            "object": "text_completion",
            "created": created,
            "model": model_id,
            "choices": [
                {
                    "index": 0,
                    "text": result.content,
                    "logprobs": None,
                    "finish_reason": result.finish_reason,
                }
            ],
            "usage": _usage_json(
                Usage(prompt_tokens=result.prompt_token_count, completion_tokens=result.generated_token_count)
            ),
        }
        if result.stopping_word is not None:
            resp["stopping_word"] = result.stopping_word
        if isinstance(result.timing, Timing):
            resp["x_streamgen_timing"] = _timing_json(result.timing)
        return JSONResponse(resp)

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Any:
        gen_req = await _parse_request(request, chat=True)
        created = int(time.time())
        chatcmpl_id = f"chatcmpl-{uuid.uuid4().hex}"

        await _try_acquire_semaphore()
        if gen_req.stream:
            event_iter = _stream_chat_completions(
                events=engine.astream_chat(gen_req),
                model_id=model_id,
                created=created,
                chatcmpl_id=chatcmpl_id,
                request=request,
                release=_release_semaphore,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        try:
            result = await _run_with_disconnect_cancellation(request, _collect_result(engine.astream_chat(gen_req)))
        finally:
            _release_semaphore()

        resp = dict(result.chat_response or {})
        resp["model"] = model_id
        if isinstance(result.timing, Timing):
            resp["x_streamgen_timing"] = _timing_json(result.timing)
        return JSONResponse(resp)

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _usage_json(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def _timing_json(timing: Timing) -> dict[str, float | None]:
    return {
        "prefill_s": timing.prefill_s,
        "decode_s": timing.decode_s,
        "total_s": timing.total_s,
        "tok_per_s": timing.tok_per_s,
    }


def _error_json(message: str, kind: str) -> dict[str, Any]:
    return {
        "error": {
            "message": message,
            "type": "invalid_request_error" if kind == "invalid_param" else "server_error",
            "param": None,
            "code": kind,
        }
    }


async def _collect_result(events: AsyncIterator[StreamEvent]) -> CompletionResult:
    """Drain an engine event stream and return the final result.

    Raises:
        HTTPException: If the engine reports an error.
    """
    result: CompletionResult | None = None
    async for event in events:
        if isinstance(event, FinalEvent):
            result = event.result
        elif isinstance(event, ErrorEvent):
            raise HTTPException(status_code=_STATUS_BY_KIND.get(event.kind, 500), detail=event.message)
    if result is None:
        raise HTTPException(status_code=500, detail="Generation ended without a result.")
    return result


async def _stream_text_completion(
    *,
    events: AsyncIterator[StreamEvent],
    model_id: str,
    created: int,
    cmpl_id: str,
    request: Request,
    release: Any,
) -> AsyncIterator[str]:
    def _chunk(text: str, finish_reason: str | None) -> dict[str, Any]:
        return {
            "id": cmpl_id,
            "object": "text_completion",
            "created": created,
            "model": model_id,
            "choices": [{"index": 0, "text": text, "logprobs": None, "finish_reason": finish_reason}],
        }

    final: FinalEvent | None = None
    failed = False
    cancelled = False

    try:
        async for event in events:
            # If the client disconnects mid-stream, stop consuming promptly.
            # The engine stream is closed when this generator unwinds.
            if await request.is_disconnected():
                cancelled = True
                break

            if isinstance(event, DeltaEvent):
                if event.text:
                    yield _sse(json.dumps(_chunk(event.text, None), ensure_ascii=False))
            elif isinstance(event, FinalEvent):
                final = event
            elif isinstance(event, ErrorEvent):
                yield _sse(json.dumps(_error_json(event.message, event.kind), ensure_ascii=False))
                failed = True
                break
    except asyncio.CancelledError:
        cancelled = True
        raise
    finally:
        release()
        await events.aclose()

    if cancelled:
        return
    if not failed:
        terminal = _chunk("", final.finish_reason if final is not None else "stop")
        if final is not None:
            terminal["usage"] = _usage_json(final.usage)
        yield _sse(json.dumps(terminal, ensure_ascii=False))
    yield "data: [DONE]\n\n"


async def _stream_chat_completions(
    *,
    events: AsyncIterator[StreamEvent],
    model_id: str,
    created: int,
    chatcmpl_id: str,
    request: Request,
    release: Any,
) -> AsyncIterator[str]:
    def _chunk(delta: dict[str, Any], finish_reason: str | None) -> dict[str, Any]:
        return {
            "id": chatcmpl_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model_id,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    # Initial chunk announces the role.
    yield _sse(json.dumps(_chunk({"role": "assistant"}, None), ensure_ascii=False))

    final_finish_reason: str | None = None
    final_usage: Usage | None = None
    final_timing: Timing | None = None
    failed = False
    cancelled = False

    try:
        async for event in events:
            if await request.is_disconnected():
                cancelled = True
                break

            if isinstance(event, DeltaEvent):
                if event.text:
                    yield _sse(json.dumps(_chunk({"content": event.text}, None), ensure_ascii=False))
                continue

            if isinstance(event, ToolCallEvent):
                final_finish_reason = "tool_calls"
                tool_calls = []
                for i, tc in enumerate(event.tool_calls):
                    item = tool_call_to_json(tc)
                    item["index"] = i
                    tool_calls.append(item)
                yield _sse(json.dumps(_chunk({"tool_calls": tool_calls}, None), ensure_ascii=False))
                continue

            if isinstance(event, FinalEvent):
                # Don't override tool_calls finish reason
                if final_finish_reason != "tool_calls":
                    final_finish_reason = event.finish_reason
                final_usage = event.usage
                final_timing = event.result.timing
                continue

            if isinstance(event, ErrorEvent):
                yield _sse(json.dumps(_error_json(event.message, event.kind), ensure_ascii=False))
                failed = True
                break
    except asyncio.CancelledError:
        cancelled = True
        raise
    finally:
        release()
        await events.aclose()

    # Terminal chunk + DONE (skip if the request was cancelled/disconnected).
    if cancelled:
        return
    if not failed:
        terminal = _chunk({}, final_finish_reason or "stop")
        if isinstance(final_usage, Usage):
            terminal["usage"] = _usage_json(final_usage)
        if isinstance(final_timing, Timing):
            terminal["x_streamgen_timing"] = _timing_json(final_timing)
        yield _sse(json.dumps(terminal, ensure_ascii=False))
    yield "data: [DONE]\n\n"
