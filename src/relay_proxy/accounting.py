from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import tiktoken

from .transcoder import RelayMode, as_string, message_text


log = logging.getLogger(__name__)

TokenCounter = Callable[[str, str], int]

# Streamed tool calls carry no usage; each call is billed a fixed overhead.
TOOL_CALL_TOKEN_OVERHEAD = 7

_default_encoding_name = "cl100k_base"
_encodings: Dict[str, "tiktoken.Encoding"] = {}
_encodings_lock = threading.Lock()


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "Usage":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            prompt_tokens=_as_int(payload.get("prompt_tokens")),
            completion_tokens=_as_int(payload.get("completion_tokens")),
            total_tokens=_as_int(payload.get("total_tokens")),
        )

    def to_payload(self) -> Dict[str, int]:
        return asdict(self)


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def configure(default_encoding: str) -> None:
    global _default_encoding_name
    with _encodings_lock:
        _default_encoding_name = default_encoding
        _encodings.clear()


def _encoding_for(model_name: str) -> "tiktoken.Encoding":
    with _encodings_lock:
        encoding = _encodings.get(model_name)
        if encoding is not None:
            return encoding
        try:
            encoding = tiktoken.encoding_for_model(model_name)
        except KeyError:
            log.debug("No tokenizer registered for %s; using %s", model_name, _default_encoding_name)
            encoding = tiktoken.get_encoding(_default_encoding_name)
        _encodings[model_name] = encoding
        return encoding


def count_token_text(text: str, model_name: str) -> int:
    if not text:
        return 0
    return len(_encoding_for(model_name).encode(text, disallowed_special=()))


def completion_usage(
    texts: Iterable[str],
    prompt_tokens: int,
    model_name: str,
    count_tokens: TokenCounter = count_token_text,
) -> Usage:
    completion_tokens = sum(count_tokens(text, model_name) for text in texts)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def response_text_to_usage(
    response_text: str,
    prompt_tokens: int,
    model_name: str,
    *,
    tool_count: int = 0,
    count_tokens: TokenCounter = count_token_text,
) -> Usage:
    """Usage for a streamed response, which upstreams report without token counts."""
    completion_tokens = count_tokens(response_text, model_name)
    completion_tokens += tool_count * TOOL_CALL_TOKEN_OVERHEAD
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def count_prompt_tokens(
    payload: Dict[str, Any],
    relay_mode: RelayMode,
    model_name: str,
    count_tokens: TokenCounter = count_token_text,
) -> int:
    if relay_mode is RelayMode.COMPLETIONS:
        prompt: Optional[Any] = payload.get("prompt")
        if isinstance(prompt, list):
            return sum(count_tokens(as_string(item), model_name) for item in prompt)
        return count_tokens(as_string(prompt), model_name)

    messages = payload.get("messages")
    if not isinstance(messages, list):
        return 0
    total = 0
    for message in messages:
        if isinstance(message, dict):
            total += count_tokens(message_text(message.get("content")), model_name)
    return total
