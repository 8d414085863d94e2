import json

import pytest


def test_extract_tool_call_basic():
    from streamgen.engine.tool_parser import extract_tool_call

    text = 'Sure. {"function": {"name": "get_weather", "arguments": {"city": "Paris"}}}'

    call = extract_tool_call(text)
    assert call is not None
    assert call.name == "get_weather"
    assert json.loads(call.arguments) == {"city": "Paris"}
    assert call.id.startswith("call_get_weather_")
    assert call.type == "function"


def test_extract_tool_call_nested_arguments():
    from streamgen.engine.tool_parser import extract_tool_call

    text = '{"function": {"name": "f", "arguments": {"a": {"b": [1, {"c": 2}]}}}}'

    call = extract_tool_call(text)
    assert call is not None
    assert call.parsed_arguments() == {"a": {"b": [1, {"c": 2}]}}


def test_extract_tool_call_braces_inside_strings():
    from streamgen.engine.tool_parser import extract_tool_call

    text = '{"function": {"name": "echo", "arguments": {"text": "a } b { \\" c"}}} trailing'

    call = extract_tool_call(text)
    assert call is not None
    assert call.parsed_arguments() == {"text": 'a } b { " c'}


def test_extract_tool_call_string_encoded_arguments():
    from streamgen.engine.tool_parser import extract_tool_call

    text = '{"function": {"name": "lookup", "arguments": "{\\"q\\": \\"hi\\"}"}}'

    call = extract_tool_call(text)
    assert call is not None
    assert call.parsed_arguments() == {"q": "hi"}


@pytest.mark.parametrize(
    "text",
    [
        '{"function": {"name": "ping"}}',
        '{"function": {"name": "ping", "arguments": {"unterminated": 1',
        '{"function": {"name": "ping", "arguments": ""}}',
    ],
)
def test_extract_tool_call_defaults_arguments(text):
    from streamgen.engine.tool_parser import extract_tool_call

    call = extract_tool_call(text)
    assert call is not None
    assert call.name == "ping"
    assert call.arguments == "{}"


def test_extract_tool_call_balanced_arguments_inside_open_call():
    from streamgen.engine.tool_parser import extract_tool_call

    call = extract_tool_call('{"function": {"name": "ping", "arguments": {"unterminated": 1}')

    assert call is not None
    assert call.arguments == '{"unterminated": 1}'


@pytest.mark.parametrize(
    "text",
    [
        "just some text",
        '{"name": "no_function_marker"}',
        '{"function": "missing name marker"}',
        '{"function": {"name": 42}}',
    ],
)
def test_extract_tool_call_returns_none(text):
    from streamgen.engine.tool_parser import extract_tool_call

    assert extract_tool_call(text) is None


def test_find_balanced_object():
    from streamgen.engine.tool_parser import find_balanced_object

    text = 'x {"a": "}", "b": {"c": 1}} y'

    assert find_balanced_object(text, 2) == '{"a": "}", "b": {"c": 1}}'
    assert find_balanced_object(text, 0) is None
    assert find_balanced_object("{ never closed", 0) is None


def test_parse_tool_calls_envelope_multiple_calls():
    from streamgen.engine.tool_parser import parse_tool_calls_envelope

    text = (
        "I will call two tools.\n"
        '{"tool_calls": ['
        '{"id": "call_1", "type": "function", "function": {"name": "a", "arguments": "{\\"x\\": 1}"}}, '
        '{"type": "function", "function": {"name": "b", "arguments": {"y": 2}}}'
        "]}"
    )

    calls = parse_tool_calls_envelope(text)
    assert [c.name for c in calls] == ["a", "b"]
    assert calls[0].id == "call_1"
    assert calls[0].parsed_arguments() == {"x": 1}
    assert calls[1].id.startswith("call_b_")
    assert calls[1].parsed_arguments() == {"y": 2}


def test_parse_tool_calls_envelope_skips_malformed_entries():
    from streamgen.engine.tool_parser import parse_tool_calls_envelope

    text = '{"tool_calls": [{"function": {"name": ""}}, {"function": {"name": "ok"}}]}'

    calls = parse_tool_calls_envelope(text)
    assert [c.name for c in calls] == ["ok"]
    assert calls[0].arguments == "{}"


@pytest.mark.parametrize(
    "text",
    [
        "no envelope here",
        '{"tool_calls": [ truncated',
        '{"tool_calls": "not a list"}',
    ],
)
def test_parse_tool_calls_envelope_empty(text):
    from streamgen.engine.tool_parser import parse_tool_calls_envelope

    assert parse_tool_calls_envelope(text) == []


def test_tool_call_from_json_rejects_bad_payloads():
    from streamgen.engine.chat_types import tool_call_from_json
    from streamgen.engine.tool_parser import ToolCallParseError

    with pytest.raises(ToolCallParseError):
        tool_call_from_json("nope")
    with pytest.raises(ToolCallParseError):
        tool_call_from_json({"type": "retrieval", "function": {"name": "x"}})
    with pytest.raises(ToolCallParseError):
        tool_call_from_json({"function": {"name": ""}})


def test_extract_tool_call_returns_arguments_unmodified():
    from streamgen.engine.tool_parser import extract_tool_call

    arguments = '{"a": {"b": "}"}, "c": 1}'
    text = 'ok {"function": {"name": "f", "arguments": ' + arguments + "}} done"

    call = extract_tool_call(text)
    assert call is not None
    assert call.arguments == arguments
