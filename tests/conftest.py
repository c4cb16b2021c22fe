import httpx
import pytest

from relay_proxy import metrics, trace


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.configure(True)
    metrics.reset_for_test()
    yield
    metrics.reset_for_test()
    metrics.configure(True)


@pytest.fixture(autouse=True)
def reset_trace():
    trace.reset_for_test()
    yield
    trace.reset_for_test()


class ChunkStream(httpx.AsyncByteStream):
    """Upstream body that yields the given chunks and remembers how far it was read."""

    def __init__(self, chunks, *, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.pulled = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            self.pulled += 1
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self):
        self.closed = True


def sse_response(lines, *, chunk_size=None, error=None, newline="\n"):
    body = "".join(line + newline for line in lines).encode("utf-8")
    if chunk_size:
        chunks = [body[i:i + chunk_size] for i in range(0, len(body), chunk_size)]
    else:
        chunks = [(line + newline).encode("utf-8") for line in lines]
    stream = ChunkStream(chunks, error=error)
    response = httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        stream=stream,
    )
    return response, stream


@pytest.fixture
def make_sse_response():
    return sse_response
