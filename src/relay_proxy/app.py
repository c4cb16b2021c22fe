from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from . import accounting, metrics, trace
from .accounting import TokenCounter, Usage, count_prompt_tokens, response_text_to_usage
from .config import RelayConfig, load_config
from .errors import RelayError
from .pump import StreamPump
from .rewriter import handle_response
from .sse import DATA_PREFIX, EVENT_STREAM_HEADERS, format_line
from .transcoder import RelayMode
from .upstream import UpstreamClient, is_event_stream


config: RelayConfig = load_config()
logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))
logger = logging.getLogger("relay_proxy")

FIXED_CONTENT_HEADER = "x-fixed-content"


@asynccontextmanager
async def lifespan(app: FastAPI):
    global config
    config = load_config()
    app.state.config = config
    metrics.configure(config.metrics_enabled)
    trace.configure(
        config.trace_log_path,
        max_string_length=config.trace_max_string_length,
    )
    accounting.configure(config.tokenizer_encoding)
    app.state.count_tokens = accounting.count_token_text
    app.state.upstream = UpstreamClient(
        base_url=config.upstream_base_url,
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
        api_key=config.upstream_api_key,
    )
    try:
        yield
    finally:
        upstream: UpstreamClient = app.state.upstream
        await upstream.aclose()


app = FastAPI(title="Fixed Content Relay", lifespan=lifespan)


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
async def readyz() -> Response:
    upstream: UpstreamClient = app.state.upstream
    try:
        ok = await upstream.check_readiness()
    except RelayError as exc:
        logger.warning("Readiness check failed: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not ok:
        raise HTTPException(status_code=503, detail="Upstream not ready")
    return JSONResponse({"status": "ready"})


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    config: RelayConfig = app.state.config
    if not metrics.is_enabled() or not config.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=metrics.render_metrics(), media_type=metrics.content_type())


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _relay(request)


@app.post("/v1/completions")
async def completions(request: Request) -> Response:
    return await _relay(request)


async def _relay(request: Request) -> Response:
    request_id = f"relay-{uuid.uuid4().hex}"
    relay_mode = RelayMode.from_path(request.url.path)
    state = request.app.state
    config: RelayConfig = state.config
    upstream: UpstreamClient = state.upstream
    count_tokens: TokenCounter = state.count_tokens

    try:
        payload = await _read_json(request)
        model_name = str(payload.get("model") or "")
        stream = bool(payload.get("stream"))
        fixed_content = _fixed_content(request, config.fixed_content)
        metrics.observe_request(relay_mode.value, stream)
        trace.record(
            "client_request",
            request_id=request_id,
            relay_mode=relay_mode.value,
            payload=payload,
            stream=stream,
            metadata={"fixed_content": bool(fixed_content)},
        )
        prompt_tokens = count_prompt_tokens(payload, relay_mode, model_name, count_tokens)

        response = await upstream.open(
            relay_mode.upstream_path,
            payload,
            request_id=request_id,
            relay_mode=relay_mode.value,
        )
        if stream and response.status_code == 200 and is_event_stream(response):
            pump = StreamPump(response, relay_mode, fixed_content)
            generator = _stream_events(
                pump,
                request_id=request_id,
                relay_mode=relay_mode,
                model_name=model_name,
                prompt_tokens=prompt_tokens,
                count_tokens=count_tokens,
            )
            return StreamingResponse(generator, headers=EVENT_STREAM_HEADERS)

        relayed = await handle_response(
            response,
            relay_mode=relay_mode,
            prompt_tokens=prompt_tokens,
            model_name=model_name,
            fixed_content=fixed_content,
            count_tokens=count_tokens,
        )
    except RelayError as exc:
        return _error_response(exc, request_id, relay_mode)

    metrics.observe_completion_tokens(model_name, relayed.usage.completion_tokens)
    trace.record(
        "relay_response",
        request_id=request_id,
        relay_mode=relay_mode.value,
        payload={"status": relayed.status_code, "response_text": relayed.response_text},
        stream=False,
        metadata={"usage": relayed.usage.to_payload(), "injected": relayed.injected},
    )
    return Response(
        content=relayed.body,
        status_code=relayed.status_code,
        headers=relayed.headers,
    )


async def _stream_events(
    pump: StreamPump,
    *,
    request_id: str,
    relay_mode: RelayMode,
    model_name: str,
    prompt_tokens: int,
    count_tokens: TokenCounter,
) -> AsyncIterator[bytes]:
    events = pump.iter_events()
    outcome = "disconnected"
    try:
        async for line in events:
            yield format_line(line)
        outcome = "completed"
    except RelayError as exc:
        outcome = "failed"
        _record_error(exc, request_id, relay_mode)
        # headers are already on the wire; report the failure in-band
        yield format_line(DATA_PREFIX + json.dumps(exc.to_payload(), ensure_ascii=False))
    finally:
        # the transport may be cancelling this task after a client disconnect
        await asyncio.shield(
            _finish_stream(
                pump,
                events,
                outcome=outcome,
                request_id=request_id,
                relay_mode=relay_mode,
                model_name=model_name,
                prompt_tokens=prompt_tokens,
                count_tokens=count_tokens,
            )
        )


async def _finish_stream(
    pump: StreamPump,
    events: AsyncGenerator[str, None],
    *,
    outcome: str,
    request_id: str,
    relay_mode: RelayMode,
    model_name: str,
    prompt_tokens: int,
    count_tokens: TokenCounter,
) -> None:
    await events.aclose()
    try:
        await pump.aclose()
    except RelayError as exc:
        _record_error(exc, request_id, relay_mode)

    if outcome == "disconnected":
        logger.info("Client disconnected; stream %s abandoned", request_id)
        metrics.observe_disconnect()

    result = pump.result
    usage = Usage.from_payload(result.usage)
    if usage.total_tokens == 0:
        usage = response_text_to_usage(
            result.response_text,
            prompt_tokens,
            model_name,
            tool_count=result.tool_count,
            count_tokens=count_tokens,
        )
    if result.injected:
        metrics.observe_injection(True)
    metrics.observe_completion_tokens(model_name, usage.completion_tokens)
    logger.info(
        "stream_complete id=%s mode=%s outcome=%s tool_count=%d injected=%s completion_tokens=%d",
        request_id,
        relay_mode.value,
        outcome,
        result.tool_count,
        result.injected,
        usage.completion_tokens,
    )
    trace.record(
        "relay_stream_complete",
        request_id=request_id,
        relay_mode=relay_mode.value,
        payload={"response_text": result.response_text},
        stream=True,
        metadata={
            "outcome": outcome,
            "tool_count": result.tool_count,
            "injected": result.injected,
            "usage": usage.to_payload(),
        },
    )


def _record_error(exc: RelayError, request_id: str, relay_mode: RelayMode) -> None:
    if exc.is_upstream:
        logger.warning("Upstream error %s (%s): %s", exc.status_code, exc.code, exc)
    else:
        logger.error("Relay failure %s: %s", exc.code, exc)
    metrics.observe_error(exc.code)
    trace.record(
        "relay_error",
        request_id=request_id,
        relay_mode=relay_mode.value,
        payload=exc.to_payload(),
        metadata={"status": exc.status_code},
    )


def _error_response(exc: RelayError, request_id: str, relay_mode: RelayMode) -> JSONResponse:
    _record_error(exc, request_id, relay_mode)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


def _fixed_content(request: Request, default: str) -> str:
    value = request.headers.get(FIXED_CONTENT_HEADER)
    if value is None:
        return default
    # header values arrive as latin-1; clients send the trailer as UTF-8 bytes
    try:
        return value.encode("latin-1").decode("utf-8")
    except UnicodeError:
        return value


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise RelayError("Invalid JSON payload", code="invalid_request_body", status_code=400) from exc
    if not isinstance(payload, dict):
        raise RelayError("Request body must be a JSON object", code="invalid_request_body", status_code=400)
    return payload
