import json

import pytest

from relay_proxy import metrics
from relay_proxy.transcoder import RelayMode, decode_line, is_done_line, message_text


def _chat_line(delta, finish_reason=None):
    return "data: " + json.dumps(
        {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}
    )


def test_short_and_foreign_lines_are_skipped():
    assert decode_line("", RelayMode.CHAT_COMPLETIONS) is None
    assert decode_line("data:", RelayMode.CHAT_COMPLETIONS) is None
    assert decode_line(": keep-alive ping", RelayMode.CHAT_COMPLETIONS) is None
    assert decode_line("event: message", RelayMode.CHAT_COMPLETIONS) is None


def test_done_line_detection():
    assert is_done_line("data: [DONE]")
    assert is_done_line("data: [DONE]\r")
    assert not is_done_line('data: {"choices":[]}')


def test_chat_content_delta():
    increment = decode_line(_chat_line({"content": "Hel"}), RelayMode.CHAT_COMPLETIONS)
    assert increment.text_delta == "Hel"
    assert increment.finish_reason is None
    assert increment.tool_call_count == 0


def test_chat_stop_marker():
    increment = decode_line(_chat_line({}, "stop"), RelayMode.CHAT_COMPLETIONS)
    assert increment.is_stop
    assert increment.text_delta == ""


def test_chat_other_finish_reasons_are_not_stop():
    increment = decode_line(_chat_line({"content": "x"}, "length"), RelayMode.CHAT_COMPLETIONS)
    assert increment.finish_reason is None


def test_chat_tool_call_fragments():
    delta = {
        "tool_calls": [
            {"index": 0, "function": {"name": "get_weather", "arguments": "{\"city\":"}},
            {"index": 1, "function": {"name": None, "arguments": "\"Oslo\"}"}},
        ]
    }
    increment = decode_line(_chat_line(delta), RelayMode.CHAT_COMPLETIONS)
    assert increment.text_delta == "get_weather{\"city\":\"Oslo\"}"
    assert increment.tool_call_count == 2
    assert [fragment.index for fragment in increment.tool_calls] == [0, 1]
    assert increment.tool_calls[1].name == ""


def test_chat_non_string_content_contributes_nothing():
    increment = decode_line(_chat_line({"content": None, "role": "assistant"}), RelayMode.CHAT_COMPLETIONS)
    assert increment.text_delta == ""


def test_completions_schema():
    line = "data: " + json.dumps(
        {"choices": [{"text": "Once upon", "finish_reason": None}, {"text": " a time", "finish_reason": "stop"}]}
    )
    increment = decode_line(line, RelayMode.COMPLETIONS)
    assert increment.text_delta == "Once upon a time"
    assert increment.is_stop


def test_chunk_without_choices_is_an_empty_increment():
    increment = decode_line('data: {"usage":{"total_tokens":3}}', RelayMode.CHAT_COMPLETIONS)
    assert increment is not None
    assert increment.text_delta == ""
    assert increment.usage == {"total_tokens": 3}


def test_usage_is_ignored_when_not_an_object():
    increment = decode_line('data: {"choices":[],"usage":7}', RelayMode.CHAT_COMPLETIONS)
    assert increment is not None
    assert increment.usage is None


@pytest.mark.parametrize(
    "line",
    [
        "data: {not json",
        'data: ["a", "b"]',
        'data: {"choices": "nope"}',
        'data: {"choices": [{"delta": "text"}]}',
        "data: " + "[" * 200000,
    ],
    ids=["not-json", "array", "choices-not-list", "delta-not-object", "too-deep"],
)
def test_malformed_lines_are_dropped_and_counted(line):
    assert decode_line(line, RelayMode.CHAT_COMPLETIONS) is None
    output = metrics.render_metrics().decode()
    assert 'relay_proxy_decode_failures_total{mode="chat_completions"} 1.0' in output


def test_relay_mode_from_path():
    assert RelayMode.from_path("/v1/chat/completions") is RelayMode.CHAT_COMPLETIONS
    assert RelayMode.from_path("/v1/completions/") is RelayMode.COMPLETIONS
    with pytest.raises(ValueError):
        RelayMode.from_path("/v1/embeddings")


def test_upstream_path_per_mode():
    assert RelayMode.CHAT_COMPLETIONS.upstream_path == "/chat/completions"
    assert RelayMode.COMPLETIONS.upstream_path == "/completions"
    for mode in RelayMode:
        assert RelayMode.from_path("/v1" + mode.upstream_path) is mode


def test_message_text_flattens_text_parts():
    content = [{"type": "text", "text": "Hello"}, {"type": "image_url"}, {"type": "text", "text": " there"}]
    assert message_text(content) == "Hello there"
    assert message_text("plain") == "plain"
    assert message_text(None) == ""
