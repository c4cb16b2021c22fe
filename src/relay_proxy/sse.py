from __future__ import annotations

from typing import AsyncIterable, AsyncIterator, Dict


DATA_PREFIX = "data: "
DONE_LINE = "data: [DONE]"

EVENT_STREAM_HEADERS: Dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """
    Split an arbitrarily chunked byte stream on ``\\n``.

    Bytes are decoded only once a full line is available so multi-byte
    characters split across reads survive. A trailing partial line is flushed
    at end of input.
    """
    pending = b""
    async for chunk in chunks:
        if not chunk:
            continue
        pending += chunk
        while True:
            index = pending.find(b"\n")
            if index < 0:
                break
            line, pending = pending[:index], pending[index + 1 :]
            yield line.decode("utf-8", errors="replace")
    if pending:
        yield pending.decode("utf-8", errors="replace")


def normalize_line(line: str) -> str:
    if line.startswith(DONE_LINE):
        return DONE_LINE
    # some upstreams terminate lines with \r\n
    if line.endswith("\r"):
        return line[:-1]
    return line


def format_line(line: str) -> bytes:
    return f"{line}\n\n".encode("utf-8")
