from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from .errors import error_wrapper
from .injector import FixedContentInjector
from .sse import iter_lines, normalize_line
from .transcoder import RelayMode, decode_line, is_done_line


@dataclass
class StreamResult:
    response_text: str = ""
    tool_count: int = 0
    injected: bool = False
    completed: bool = False
    usage: Optional[Dict[str, Any]] = None


class Rendezvous:
    """
    Single-slot hand-off between one producer and one consumer.

    ``put`` returns only after the consumer has called ``task_done`` for the
    item, so the producer is never more than one event ahead of the client.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=1)

    async def put(self, item: str) -> None:
        await self._queue.put(item)
        await self._queue.join()

    async def get(self) -> str:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()


class StreamPump:
    """
    Relay one upstream SSE response.

    A producer task splits and decodes the upstream body, accumulates the
    generated text and lets the injector decide what to forward. The caller
    drives ``iter_events`` as the consumer. ``result`` may only be read once
    ``iter_events`` has returned or been closed.
    """

    def __init__(
        self,
        response: httpx.Response,
        relay_mode: RelayMode,
        fixed_content: str = "",
        *,
        injector: Optional[FixedContentInjector] = None,
    ) -> None:
        self._response = response
        self._relay_mode = relay_mode
        self._injector = injector or FixedContentInjector(fixed_content)
        self._closed = False
        self.result = StreamResult()

    async def iter_events(self) -> AsyncGenerator[str, None]:
        handoff = Rendezvous()
        producer = asyncio.create_task(self._produce(handoff))
        try:
            while True:
                line = await self._next(handoff, producer)
                if line is None:
                    break
                yield normalize_line(line)
                handoff.task_done()
        finally:
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        except (httpx.HTTPError, OSError) as exc:
            raise error_wrapper(exc, "close_response_body_failed") from exc

    async def _next(self, handoff: Rendezvous, producer: "asyncio.Task[Any]") -> Optional[str]:
        getter = asyncio.ensure_future(handoff.get())
        try:
            done, _ = await asyncio.wait({getter, producer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            getter.cancel()
            raise
        if getter in done:
            return getter.result()
        getter.cancel()
        # surfaces a failed producer
        producer.result()
        return None

    async def _produce(self, handoff: Rendezvous) -> None:
        result = self.result
        injector = self._injector
        parts: List[str] = []
        try:
            async for line in iter_lines(self._response.aiter_bytes()):
                if is_done_line(line):
                    break
                increment = decode_line(line, self._relay_mode)
                if increment is None:
                    continue
                parts.append(increment.text_delta)
                result.tool_count = max(result.tool_count, increment.tool_call_count)
                if increment.usage is not None:
                    result.usage = increment.usage
                for out in injector.accept(line, increment):
                    await handoff.put(out)
                if injector.draining:
                    break
        except (httpx.HTTPError, OSError) as exc:
            raise error_wrapper(exc, "read_response_body_failed") from exc
        finally:
            result.response_text = "".join(parts)
            result.injected = injector.trailer_sent

        for out in injector.finish():
            await handoff.put(out)
        result.completed = True

