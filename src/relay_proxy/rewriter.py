from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict

import httpx

from . import metrics
from .accounting import TokenCounter, Usage, completion_usage, count_token_text
from .errors import RelayError, error_wrapper
from .injector import TRAILER_SEPARATOR
from .transcoder import RelayMode


log = logging.getLogger(__name__)

# httpx hands back a decoded body, so the upstream framing headers no longer apply.
_DROPPED_HEADERS = {"content-encoding", "transfer-encoding", "connection", "content-length"}


@dataclass
class RelayedResponse:
    status_code: int
    headers: Dict[str, str]
    body: bytes
    usage: Usage
    response_text: str
    injected: bool = False


def forward_headers(headers: httpx.Headers) -> Dict[str, str]:
    forwarded: Dict[str, str] = {}
    for key in headers.keys():
        if key.lower() in _DROPPED_HEADERS:
            continue
        forwarded[key] = headers.get_list(key)[0]
    return forwarded


async def read_body(response: httpx.Response) -> bytes:
    try:
        body = await response.aread()
    except (httpx.HTTPError, OSError) as exc:
        raise error_wrapper(exc, "read_response_body_failed") from exc
    try:
        await response.aclose()
    except (httpx.HTTPError, OSError) as exc:
        raise error_wrapper(exc, "close_response_body_failed") from exc
    return body


async def handle_response(
    response: httpx.Response,
    *,
    relay_mode: RelayMode,
    prompt_tokens: int,
    model_name: str,
    fixed_content: str = "",
    count_tokens: TokenCounter = count_token_text,
) -> RelayedResponse:
    """
    Relay a complete (non-streaming) upstream response.

    Upstream errors are raised as ``RelayError`` with the provider's status and
    payload. Otherwise usage is filled in when the upstream reported none, and
    when ``fixed_content`` is set every choice gets it appended and the
    document is re-encoded; without it the original bytes are returned as-is.
    """
    body = await read_body(response)
    try:
        document = json.loads(body)
    except (ValueError, RecursionError) as exc:
        raise error_wrapper(exc, "unmarshal_response_body_failed") from exc
    if not isinstance(document, dict):
        raise RelayError(
            "upstream response is not a JSON object",
            code="unmarshal_response_body_failed",
        )

    error = document.get("error")
    if isinstance(error, dict) and error.get("type"):
        raise RelayError.from_upstream(error, response.status_code)

    schema = relay_mode.schema
    try:
        choices = schema.choices(document)
    except ValueError as exc:
        raise error_wrapper(exc, "unmarshal_response_body_failed") from exc

    texts = [schema.choice_text(choice) for choice in choices]
    response_text = "".join(texts) if model_name.startswith("gpt") else ""

    usage = Usage.from_payload(document.get("usage"))
    recomputed = usage.total_tokens == 0
    if recomputed:
        usage = completion_usage(texts, prompt_tokens, model_name, count_tokens)
        log.debug(
            "Upstream omitted usage for %s; computed %d completion tokens",
            model_name,
            usage.completion_tokens,
        )

    headers = forward_headers(response.headers)
    if not fixed_content:
        headers["content-length"] = str(len(body))
        return RelayedResponse(response.status_code, headers, body, usage, response_text)

    for choice in choices:
        schema.append_text(choice, TRAILER_SEPARATOR + fixed_content)
    if recomputed:
        document["usage"] = usage.to_payload()
    try:
        rewritten = json.dumps(document, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise error_wrapper(exc, "remarshal_response_body_failed") from exc

    headers["content-length"] = str(len(rewritten))
    metrics.observe_injection(False)
    return RelayedResponse(
        response.status_code,
        headers,
        rewritten,
        usage,
        response_text,
        injected=True,
    )
