import os
from dataclasses import dataclass
from typing import Optional


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_positive_int_or_none(name: str) -> Optional[int]:
    value = _parse_int(name, 0)
    if value <= 0:
        return None
    return value


@dataclass
class RelayConfig:
    upstream_base_url: str = "http://localhost:8080/v1"
    upstream_api_key: Optional[str] = None
    fixed_content: str = ""
    connect_timeout: float = 10.0
    read_timeout: float = 120.0
    metrics_enabled: bool = True
    log_level: str = "INFO"
    tokenizer_encoding: str = "cl100k_base"
    trace_log_path: Optional[str] = None
    trace_max_string_length: Optional[int] = None


def load_config() -> RelayConfig:
    """
    Build a ``RelayConfig`` from the current environment.

    Every call reads the environment afresh, so tests that monkey-patch
    variables observe their own values.
    """
    return RelayConfig(
        upstream_base_url=os.getenv("UPSTREAM_BASE_URL", "http://localhost:8080/v1"),
        upstream_api_key=os.getenv("UPSTREAM_API_KEY") or None,
        fixed_content=os.getenv("FIXED_CONTENT", ""),
        connect_timeout=_parse_float("CONNECT_TIMEOUT", 10.0),
        read_timeout=_parse_float("READ_TIMEOUT", 120.0),
        metrics_enabled=_get_env_bool("METRICS_ENABLED", True),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        tokenizer_encoding=os.getenv("TOKENIZER_ENCODING", "cl100k_base"),
        trace_log_path=os.getenv("TRACE_LOG_PATH") or None,
        trace_max_string_length=_parse_positive_int_or_none("TRACE_MAX_STRING_LENGTH"),
    )
