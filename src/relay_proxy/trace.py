"""
Optional JSON-lines trace of every relayed request.

Tracing is off until ``configure`` receives a path. Entries carry the request
id and relay mode so one request can be followed from the client call through
the upstream response to the final stream summary.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional


_lock = threading.Lock()
_logger: Optional[logging.Logger] = None
_current_path: Optional[str] = None
_max_string_length: Optional[int] = None


def configure(path: Optional[str], *, max_string_length: Optional[int] = None) -> None:
    global _logger, _current_path, _max_string_length

    if not path:
        _disable()
        return

    abs_path = os.path.abspath(path)
    directory = os.path.dirname(abs_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    logger = logging.getLogger("relay_proxy.trace")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    _remove_handlers(logger)

    handler = logging.FileHandler(abs_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)

    _logger = logger
    _current_path = abs_path
    _max_string_length = max_string_length if max_string_length and max_string_length > 0 else None


def record(
    event: str,
    *,
    request_id: str,
    relay_mode: str,
    payload: Any,
    stream: Optional[bool] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Append one trace entry. Serialization or I/O problems are dropped silently."""
    if _logger is None:
        return

    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "relay_mode": relay_mode,
        "request_id": request_id,
        "payload": payload,
    }
    if stream is not None:
        entry["stream"] = bool(stream)
    if metadata:
        entry["meta"] = metadata
    if _max_string_length is not None:
        entry = _truncate(entry, _max_string_length)

    try:
        serialized = json.dumps(entry, ensure_ascii=False, separators=(",", ":"), default=repr)
    except (TypeError, ValueError):
        return

    with _lock:
        try:
            _logger.info(serialized)
        except OSError:
            return


def is_enabled() -> bool:
    return _logger is not None


def current_path() -> Optional[str]:
    return _current_path


def reset_for_test() -> None:
    _disable()


def _disable() -> None:
    global _logger, _current_path, _max_string_length
    if _logger is not None:
        _remove_handlers(_logger)
    _logger = None
    _current_path = None
    _max_string_length = None


def _remove_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _truncate(value: Any, limit: int) -> Any:
    if isinstance(value, dict):
        return {key: _truncate(val, limit) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_truncate(item, limit) for item in value]
    if isinstance(value, str) and len(value) > limit:
        return f"{value[:limit]}... (+{len(value) - limit} chars)"
    return value
