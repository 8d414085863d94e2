import json

import pytest

pytest.importorskip("fastapi", reason="fastapi not installed")

from streamgen.engine.adapters.base import BaseEngineAdapter  # noqa: E402


_EOS_ID = 0


class _ScriptedAdapter(BaseEngineAdapter):
    def __init__(self, script, *, ready: bool = True) -> None:
        self._script = list(script)
        self._ready = ready
        self._pieces: dict[int, str] = {_EOS_ID: ""}
        self._cursor = 0

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def eos_token_id(self) -> int:
        return _EOS_ID

    def tokenize(self, text):
        return [1000 + ord(ch) for ch in text]

    def decode(self, token_ids, position):
        return True

    def sample(self, params, *, grammar=None, json_schema=None):
        piece = self._script[self._cursor] if self._cursor < len(self._script) else None
        self._cursor += 1
        if piece is None:
            return _EOS_ID
        token_id = 1 + len(self._pieces)
        self._pieces[token_id] = piece
        return token_id

    def token_to_text(self, token_id):
        if token_id >= 1000:
            return chr(token_id - 1000)
        return self._pieces[token_id]

    def context_window_size(self):
        return 2048

    def clear_kv_cache(self):
        self._cursor = 0


def _client(script, *, ready: bool = True, **app_kwargs):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app
    from streamgen.engine.chat_engine import ChatEngine, EngineConfig

    engine = ChatEngine(_ScriptedAdapter(script, ready=ready), config=EngineConfig(model_id="streamgen-test"))
    app = create_app(engine=engine, model_id="streamgen-test", **app_kwargs)
    return TestClient(app)


def _collect_sse_events(raw: str) -> list[str]:
    events: list[str] = []
    for block in raw.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        if not block.startswith("data: "):
            continue
        events.append(block[len("data: ") :])
    return events


def _stream(client, path: str, payload: dict) -> list[str]:
    with client.stream("POST", path, json=payload) as resp:
        assert resp.status_code == 200
        resp.read()  # Must read the stream before accessing .text
        raw = resp.text
    return _collect_sse_events(raw)


_WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
    },
}


def test_health_and_models():
    client = _client([])

    assert client.get("/health").json() == {"status": "ok", "generating": False}

    data = client.get("/v1/models").json()
    assert data["object"] == "list"
    assert data["data"][0]["id"] == "streamgen-test"


def test_health_reports_loading_engine():
    client = _client([], ready=False)

    assert client.get("/health").json()["status"] == "loading"


def test_chat_non_stream_basic_shape():
    client = _client(["hel", "lo", None])

    resp = client.post(
        "/v1/chat/completions",
        json={"model": "streamgen-test", "messages": [{"role": "user", "content": "hi"}]},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["id"].startswith("chatcmpl-")
    assert data["object"] == "chat.completion"
    assert data["model"] == "streamgen-test"
    assert data["choices"][0]["message"] == {"role": "assistant", "content": "hello"}
    assert data["choices"][0]["finish_reason"] == "stop"
    assert data["usage"]["completion_tokens"] == 3
    assert data["usage"]["total_tokens"] == data["usage"]["prompt_tokens"] + 3


def test_chat_stop_and_max_tokens_are_honoured():
    client = _client(["one", " two", "\n", "three"])

    resp = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "count"}], "stop": "\n", "max_tokens": 10},
    )
    assert resp.json()["choices"][0]["message"]["content"] == "one two"

    resp = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "count"}], "max_tokens": 1},
    )
    assert resp.json()["choices"][0]["finish_reason"] == "length"


def test_chat_stream_sse_ordering_and_done():
    client = _client(["he", "llo", None])

    events = _stream(
        client,
        "/v1/chat/completions",
        {"model": "streamgen-test", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
    )

    assert events[-1] == "[DONE]"
    first = json.loads(events[0])
    assert first["object"] == "chat.completion.chunk"
    assert first["choices"][0]["delta"]["role"] == "assistant"

    content = ""
    for e in events[1:-1]:
        delta = json.loads(e)["choices"][0]["delta"]
        content += delta.get("content", "")
    assert content == "hello"

    terminal = json.loads(events[-2])
    assert terminal["choices"][0]["finish_reason"] == "stop"
    assert terminal["usage"]["completion_tokens"] == 3


def test_chat_tool_calls_non_stream():
    call = '{"function": {"name": "get_weather", "arguments": {"city": "Paris"}}}'
    client = _client([call, None])

    resp = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "weather?"}], "tools": [_WEATHER_TOOL]},
    )
    assert resp.status_code == 200
    data = resp.json()
    msg = data["choices"][0]["message"]
    assert msg["content"] is None
    assert msg["tool_calls"][0]["type"] == "function"
    assert msg["tool_calls"][0]["function"]["name"] == "get_weather"
    assert json.loads(msg["tool_calls"][0]["function"]["arguments"]) == {"city": "Paris"}
    assert data["choices"][0]["finish_reason"] == "tool_calls"


def test_chat_tool_calls_stream():
    call = '{"function": {"name": "get_weather", "arguments": {"city": "Paris"}}}'
    client = _client([call, None])

    events = _stream(
        client,
        "/v1/chat/completions",
        {"stream": True, "messages": [{"role": "user", "content": "weather?"}], "tools": [_WEATHER_TOOL]},
    )

    chunks = [json.loads(e) for e in events[:-1]]
    tool_deltas = [c["choices"][0]["delta"]["tool_calls"] for c in chunks if "tool_calls" in c["choices"][0]["delta"]]
    assert tool_deltas[0][0]["index"] == 0
    assert tool_deltas[0][0]["function"]["name"] == "get_weather"
    assert chunks[-1]["choices"][0]["finish_reason"] == "tool_calls"


def test_chat_stream_error_is_reported_in_band():
    client = _client(["a"])

    events = _stream(
        client,
        "/v1/chat/completions",
        {"stream": True, "messages": [{"role": "user", "content": "x"}], "tool_choice": "required"},
    )

    error = json.loads(events[-2])
    assert error["error"]["code"] == "invalid_param"
    assert events[-1] == "[DONE]"


def test_text_completion_non_stream():
    client = _client(["Paris", ".", "\n\n", "ignored"])

    resp = client.post(
        "/v1/completions",
        json={"prompt": "The capital of France is ", "stop": ["\n\n"], "n_predict": 10},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["object"] == "text_completion"
    assert data["choices"][0]["text"] == "Paris."
    assert data["choices"][0]["finish_reason"] == "stop"
    assert data["stopping_word"] == "\n\n"


def test_text_completion_stream():
    client = _client(["a", "b", "c", None])

    events = _stream(client, "/v1/completions", {"prompt": "x", "stream": True})

    assert events[-1] == "[DONE]"
    chunks = [json.loads(e) for e in events[:-1]]
    assert "".join(c["choices"][0]["text"] for c in chunks) == "abc"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert chunks[-1]["usage"]["completion_tokens"] == 4


@pytest.mark.parametrize(
    "path, payload, status",
    [
        ("/v1/chat/completions", {"model": "other", "messages": [{"role": "user", "content": "x"}]}, 404),
        ("/v1/chat/completions", {"prompt": "x"}, 400),
        ("/v1/chat/completions", {"messages": [{"role": "wizard", "content": "x"}]}, 400),
        ("/v1/chat/completions", {"messages": [{"role": "user", "content": "x"}], "temperature": "hot"}, 400),
        ("/v1/chat/completions", {"messages": [{"role": "user", "content": "x"}], "max_tokens": 0}, 400),
        (
            "/v1/chat/completions",
            {
                "messages": [
                    {"role": "user", "content": "hi"},
                    {"role": "assistant", "content": None, "tool_calls": [{"type": "function", "function": {}}]},
                ]
            },
            400,
        ),
        ("/v1/completions", {"messages": None}, 400),
        ("/v1/completions", {"prompt": ""}, 400),
    ],
)
def test_invalid_requests(path, payload, status):
    client = _client(["a"])

    resp = client.post(path, json=payload)

    assert resp.status_code == status


def test_model_not_ready_is_503():
    client = _client(["a"], ready=False)

    resp = client.post("/v1/completions", json={"prompt": "x"})

    assert resp.status_code == 503


def test_negative_http_max_concurrency_rejected():
    with pytest.raises(ValueError):
        _client([], http_max_concurrency=-1)


def test_tokenize_and_detokenize_routes():
    client = _client([])

    resp = client.post("/tokenize", json={"content": "ok"})
    assert resp.status_code == 200
    tokens = resp.json()["tokens"]
    assert tokens == [1000 + ord("o"), 1000 + ord("k")]

    pieces = client.post("/tokenize", json={"content": "ok", "with_pieces": True}).json()["tokens"]
    assert [p["piece"] for p in pieces] == ["o", "k"]

    resp = client.post("/detokenize", json={"tokens": tokens})
    assert resp.status_code == 200
    assert resp.json() == {"content": "ok"}


@pytest.mark.parametrize(
    "path, payload, status",
    [
        ("/tokenize", {}, 400),
        ("/tokenize", {"content": 5}, 400),
        ("/detokenize", {"tokens": "nope"}, 400),
        ("/detokenize", {"tokens": [5]}, 400),
    ],
)
def test_tokenizer_routes_reject_bad_input(path, payload, status):
    client = _client([])

    assert client.post(path, json=payload).status_code == status


def test_tokenize_on_loading_model_is_503():
    client = _client([], ready=False)

    assert client.post("/tokenize", json={"content": "x"}).status_code == 503
