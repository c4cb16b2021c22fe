from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest


_enabled = True


def _init_registry() -> None:
    global REGISTRY
    global REQUEST_COUNTER
    global DECODE_FAILURE_COUNTER
    global INJECTION_COUNTER
    global ERROR_COUNTER
    global DISCONNECT_COUNTER
    global COMPLETION_TOKENS_COUNTER

    REGISTRY = CollectorRegistry()
    REQUEST_COUNTER = Counter(
        "relay_proxy_requests_total",
        "Total number of requests relayed",
        ("endpoint", "stream"),
        registry=REGISTRY,
    )
    DECODE_FAILURE_COUNTER = Counter(
        "relay_proxy_decode_failures_total",
        "Stream lines skipped because their JSON payload could not be decoded",
        ("mode",),
        registry=REGISTRY,
    )
    INJECTION_COUNTER = Counter(
        "relay_proxy_fixed_content_injections_total",
        "Number of responses that received the fixed trailer content",
        ("stream",),
        registry=REGISTRY,
    )
    ERROR_COUNTER = Counter(
        "relay_proxy_errors_total",
        "Relay failures by error code",
        ("code",),
        registry=REGISTRY,
    )
    DISCONNECT_COUNTER = Counter(
        "relay_proxy_client_disconnects_total",
        "Streams abandoned because the client went away",
        registry=REGISTRY,
    )
    COMPLETION_TOKENS_COUNTER = Counter(
        "relay_proxy_completion_tokens_total",
        "Completion tokens accounted per model",
        ("model",),
        registry=REGISTRY,
    )


_init_registry()


def configure(enabled: bool) -> None:
    global _enabled
    _enabled = enabled


def observe_request(endpoint: str, stream: bool) -> None:
    if not _enabled:
        return
    REQUEST_COUNTER.labels(endpoint=endpoint, stream=_bool_label(stream)).inc()


def observe_decode_failure(mode: str) -> None:
    if not _enabled:
        return
    DECODE_FAILURE_COUNTER.labels(mode=mode).inc()


def observe_injection(stream: bool) -> None:
    if not _enabled:
        return
    INJECTION_COUNTER.labels(stream=_bool_label(stream)).inc()


def observe_error(code: str) -> None:
    if not _enabled:
        return
    ERROR_COUNTER.labels(code=code).inc()


def observe_disconnect() -> None:
    if not _enabled:
        return
    DISCONNECT_COUNTER.inc()


def observe_completion_tokens(model: str, tokens: int) -> None:
    if not _enabled or tokens <= 0:
        return
    COMPLETION_TOKENS_COUNTER.labels(model=model).inc(tokens)


def render_metrics() -> bytes:
    return generate_latest(REGISTRY)


def is_enabled() -> bool:
    return _enabled


def content_type() -> str:
    return CONTENT_TYPE_LATEST


def reset_for_test() -> None:
    """
    Recreate the registry so each test starts from zeroed counters.
    Never call this from production code.
    """
    current_flag = _enabled
    _init_registry()
    configure(current_flag)


def _bool_label(flag: bool) -> str:
    return "true" if flag else "false"
