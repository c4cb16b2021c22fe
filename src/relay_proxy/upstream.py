from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from . import trace
from .errors import error_wrapper


log = logging.getLogger(__name__)


class UpstreamClient:
    """
    Thin wrapper over ``httpx.AsyncClient`` that opens upstream responses
    without reading them. The caller owns the returned response and must close
    it; the relay never retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        connect_timeout: float,
        read_timeout: float,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=read_timeout,
            pool=None,
        )
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def open(
        self,
        path: str,
        payload: Dict[str, Any],
        *,
        request_id: str,
        relay_mode: str,
    ) -> httpx.Response:
        stream = bool(payload.get("stream"))
        trace.record(
            "upstream_request",
            request_id=request_id,
            relay_mode=relay_mode,
            payload=payload,
            stream=stream,
        )
        request = self._client.build_request("POST", path, json=payload)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            log.warning("Upstream request to %s failed: %s", path, exc)
            raise error_wrapper(exc, "do_request_failed", 502) from exc
        trace.record(
            "upstream_response_open",
            request_id=request_id,
            relay_mode=relay_mode,
            payload={
                "status": response.status_code,
                "content_type": response.headers.get("content-type"),
            },
            stream=stream,
        )
        return response

    async def check_readiness(self) -> bool:
        try:
            response = await self._client.get("/models")
        except httpx.HTTPError as exc:
            raise error_wrapper(exc, "do_request_failed", 503) from exc

        status = response.status_code
        if status == 200:
            return True
        if status in {401, 403}:
            # Upstream is reachable but credentials are invalid; consider it ready.
            return True
        return False


def is_event_stream(response: httpx.Response) -> bool:
    return response.headers.get("content-type", "").startswith("text/event-stream")
