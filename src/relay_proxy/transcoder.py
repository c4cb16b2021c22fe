"""
Decode upstream stream lines into canonical increments.

Each ``RelayMode`` member is bound to a ``ResponseSchema`` that knows how to
read one streamed chunk and one complete response document of that API.
Supporting another upstream schema means adding a schema class and a registry
entry; nothing else in the pipeline branches on the mode.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from . import metrics
from .sse import DATA_PREFIX, DONE_LINE


log = logging.getLogger(__name__)

MIN_LINE_LENGTH = len(DATA_PREFIX)
FINISH_STOP = "stop"


class RelayMode(str, Enum):
    CHAT_COMPLETIONS = "chat_completions"
    COMPLETIONS = "completions"

    @classmethod
    def from_path(cls, path: str) -> "RelayMode":
        normalized = path.rstrip("/")
        if normalized.endswith("/chat/completions"):
            return cls.CHAT_COMPLETIONS
        if normalized.endswith("/completions"):
            return cls.COMPLETIONS
        raise ValueError(f"No relay mode for path {path!r}")

    @property
    def upstream_path(self) -> str:
        return _UPSTREAM_PATHS[self]

    @property
    def schema(self) -> "ResponseSchema":
        return _SCHEMAS[self]


@dataclass
class ToolCallFragment:
    index: int
    name: str
    arguments: str


@dataclass
class DecodedIncrement:
    text_delta: str = ""
    tool_calls: List[ToolCallFragment] = field(default_factory=list)
    tool_call_count: int = 0
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None

    @property
    def is_stop(self) -> bool:
        return self.finish_reason == FINISH_STOP


def as_string(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _choices(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        raise ValueError("chunk is not a JSON object")
    choices = payload.get("choices")
    if choices is None:
        return []
    if not isinstance(choices, list) or not all(isinstance(c, dict) for c in choices):
        raise ValueError("choices must be a list of objects")
    return choices


class ResponseSchema:
    mode: RelayMode

    def decode_chunk(self, payload: Any) -> DecodedIncrement:
        raise NotImplementedError

    def choice_text(self, choice: Dict[str, Any]) -> str:
        raise NotImplementedError

    def append_text(self, choice: Dict[str, Any], suffix: str) -> None:
        raise NotImplementedError

    def choices(self, payload: Any) -> List[Dict[str, Any]]:
        return _choices(payload)


class ChatCompletionsSchema(ResponseSchema):
    mode = RelayMode.CHAT_COMPLETIONS

    def decode_chunk(self, payload: Any) -> DecodedIncrement:
        increment = DecodedIncrement()
        parts: List[str] = []
        for choice in _choices(payload):
            delta = choice.get("delta") or {}
            if not isinstance(delta, dict):
                raise ValueError("delta must be an object")
            parts.append(as_string(delta.get("content")))
            tool_calls = delta.get("tool_calls")
            if isinstance(tool_calls, list):
                increment.tool_call_count = max(increment.tool_call_count, len(tool_calls))
                for position, tool in enumerate(tool_calls):
                    function = tool.get("function") if isinstance(tool, dict) else None
                    if not isinstance(function, dict):
                        function = {}
                    name = as_string(function.get("name"))
                    arguments = as_string(function.get("arguments"))
                    index = tool.get("index") if isinstance(tool, dict) else None
                    if not isinstance(index, int):
                        index = position
                    increment.tool_calls.append(
                        ToolCallFragment(index=index, name=name, arguments=arguments)
                    )
                    parts.append(name)
                    parts.append(arguments)
            if choice.get("finish_reason") == FINISH_STOP:
                increment.finish_reason = FINISH_STOP
        increment.text_delta = "".join(parts)
        return increment

    def choice_text(self, choice: Dict[str, Any]) -> str:
        message = choice.get("message")
        if not isinstance(message, dict):
            return ""
        return message_text(message.get("content"))

    def append_text(self, choice: Dict[str, Any], suffix: str) -> None:
        message = choice.get("message")
        if not isinstance(message, dict):
            message = {"role": "assistant"}
            choice["message"] = message
        message["content"] = message_text(message.get("content")) + suffix


class CompletionsSchema(ResponseSchema):
    mode = RelayMode.COMPLETIONS

    def decode_chunk(self, payload: Any) -> DecodedIncrement:
        increment = DecodedIncrement()
        parts: List[str] = []
        for choice in _choices(payload):
            parts.append(as_string(choice.get("text")))
            if choice.get("finish_reason") == FINISH_STOP:
                increment.finish_reason = FINISH_STOP
        increment.text_delta = "".join(parts)
        return increment

    def choice_text(self, choice: Dict[str, Any]) -> str:
        return as_string(choice.get("text"))

    def append_text(self, choice: Dict[str, Any], suffix: str) -> None:
        choice["text"] = as_string(choice.get("text")) + suffix


_UPSTREAM_PATHS: Dict[RelayMode, str] = {
    RelayMode.CHAT_COMPLETIONS: "/chat/completions",
    RelayMode.COMPLETIONS: "/completions",
}

_SCHEMAS: Dict[RelayMode, ResponseSchema] = {
    RelayMode.CHAT_COMPLETIONS: ChatCompletionsSchema(),
    RelayMode.COMPLETIONS: CompletionsSchema(),
}


def message_text(content: Any) -> str:
    """Flatten message content given either as a string or as a list of text parts."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    pieces: List[str] = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            pieces.append(as_string(part.get("text")))
    return "".join(pieces)


def is_done_line(line: str) -> bool:
    return line.startswith(DONE_LINE)


def decode_line(line: str, mode: RelayMode) -> Optional[DecodedIncrement]:
    """
    Return the increment carried by ``line`` or ``None`` when the line is to be
    dropped: keep-alives, comments, non-data fields and undecodable payloads.
    The sentinel must be detected with ``is_done_line`` before calling this.
    """
    if len(line) < MIN_LINE_LENGTH:
        return None
    if not line.startswith(DATA_PREFIX):
        return None
    raw = line[len(DATA_PREFIX):]
    try:
        payload = json.loads(raw)
        increment = mode.schema.decode_chunk(payload)
    except (ValueError, RecursionError) as exc:
        log.warning("Skipping undecodable %s stream line: %s (%s)", mode.value, raw[:200], exc)
        metrics.observe_decode_failure(mode.value)
        return None
    usage = payload.get("usage")
    if isinstance(usage, dict):
        increment.usage = usage
    return increment
