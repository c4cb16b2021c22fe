from __future__ import annotations

from typing import Any, Dict, Optional


RELAY_ERROR_TYPE = "relay_error"


class RelayError(RuntimeError):
    """
    Uniform failure raised by the relay.

    ``error`` is the OpenAI-style error object sent back to the client under the
    ``"error"`` key. Local failures carry ``type == "relay_error"`` and a code
    naming the failing operation; upstream-reported errors keep the provider's
    payload untouched.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status_code: int = 500,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        if error is None:
            error = {
                "message": message,
                "type": RELAY_ERROR_TYPE,
                "param": "",
                "code": code,
            }
        self.error = error

    @classmethod
    def from_upstream(cls, error: Dict[str, Any], status_code: int) -> "RelayError":
        message = error.get("message") or error.get("type") or "upstream error"
        code = error.get("code")
        return cls(
            str(message),
            code=str(code) if code else str(error.get("type")),
            status_code=status_code,
            error=error,
        )

    @property
    def is_upstream(self) -> bool:
        return self.error.get("type") != RELAY_ERROR_TYPE

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.error}


def error_wrapper(exc: BaseException, code: str, status_code: int = 500) -> RelayError:
    return RelayError(str(exc) or exc.__class__.__name__, code=code, status_code=status_code)
