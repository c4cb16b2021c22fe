import json

import pytest

from relay_proxy.injector import FixedContentInjector, InjectionState, build_fixed_content_line
from relay_proxy.transcoder import DecodedIncrement


STOP_LINE = 'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}'


def _injector(fixed_content=""):
    return FixedContentInjector(
        fixed_content,
        id_factory=lambda: "chatcmpl-test",
        clock=lambda: 1700000000.7,
    )


def test_fixed_content_line_format():
    line = build_fixed_content_line(
        "Disclaimer",
        id_factory=lambda: "chatcmpl-abc",
        clock=lambda: 1700000000,
    )
    assert line == (
        'data: {"id":"chatcmpl-abc","object":"chat.completion","created":1700000000,'
        '"choices":[{"index":0,"finish_reason":"stop",'
        '"delta":{"content":"\\n\\nDisclaimer","role":""}}]}'
    )


def test_fixed_content_line_keeps_non_ascii():
    line = build_fixed_content_line("内容由AI生成", id_factory=lambda: "x", clock=lambda: 0)
    assert "内容由AI生成" in line
    assert json.loads(line[len("data: "):])["choices"][0]["delta"]["content"] == "\n\n内容由AI生成"


def test_forwarding_passes_ordinary_lines():
    injector = _injector("Disclaimer")
    assert injector.accept("data: a", DecodedIncrement(text_delta="a")) == ["data: a"]
    assert injector.state is InjectionState.FORWARDING
    assert injector.pending_stop_line is None


def test_stop_releases_trailer_then_stop_line():
    injector = _injector("Disclaimer")
    out = injector.accept(STOP_LINE, DecodedIncrement(finish_reason="stop"))

    assert len(out) == 2
    trailer = json.loads(out[0][len("data: "):])
    assert trailer["id"] == "chatcmpl-test"
    assert trailer["created"] == 1700000000
    assert trailer["choices"][0]["delta"]["content"] == "\n\nDisclaimer"
    assert out[1] == STOP_LINE
    assert injector.pending_stop_line == STOP_LINE
    assert injector.trailer_sent is True
    assert injector.draining


def test_stop_without_trailer_forwards_stop_line_only():
    injector = _injector("")
    assert injector.accept(STOP_LINE, DecodedIncrement(finish_reason="stop")) == [STOP_LINE]
    assert injector.trailer_sent is False
    assert injector.draining


def test_draining_refuses_more_input():
    injector = _injector("Disclaimer")
    injector.accept(STOP_LINE, DecodedIncrement(finish_reason="stop"))
    with pytest.raises(RuntimeError):
        injector.accept("data: late", DecodedIncrement(text_delta="late"))


def test_finish_emits_sentinel_once():
    injector = _injector("Disclaimer")
    assert injector.finish() == ["data: [DONE]"]
    assert injector.finish() == []
    assert injector.trailer_sent is False
