import httpx
import pytest

from src.proxy.errors import BodyReadError, UpstreamTransportError
from src.proxy.forwarder import ClientBodyStream, UpstreamForwarder, build_target_url


class FailingStream(httpx.AsyncByteStream):
    """Response body that breaks after the first chunk."""

    async def __aiter__(self):
        yield b"partial"
        raise httpx.ReadError("connection reset")


async def chunks(*parts):
    for part in parts:
        yield part


def test_build_target_url():
    assert build_target_url("https", "example.internal", "/a?b=1") == "https://example.internal/a?b=1"
    assert build_target_url("http", "10.0.0.1:8080", "x") == "http://10.0.0.1:8080/x"


@pytest.mark.asyncio
async def test_forward_reads_whole_response(forwarder, upstream):
    upstream.handler = lambda request: httpx.Response(
        201,
        headers={"content-type": "text/plain; charset=utf-8", "x-origin": "1"},
        content=b"created",
    )

    resp = await forwarder.forward(
        "POST",
        "https://example.internal/items?x=1",
        httpx.Headers({"accept": "text/plain", "content-length": "5"}),
        body=chunks(b"he", b"llo"),
    )

    assert resp.status_code == 201
    assert resp.content == b"created"
    assert resp.encoding == "utf-8"
    assert resp.headers["x-origin"] == "1"
    assert resp.content_type == "text/plain; charset=utf-8"

    sent = upstream.last
    assert sent.method == "POST"
    assert str(sent.url) == "https://example.internal/items?x=1"
    assert sent.content == b"hello"
    assert sent.headers["host"] == "example.internal"


@pytest.mark.asyncio
async def test_forward_replaces_client_accept_encoding(forwarder, upstream):
    await forwarder.forward(
        "GET",
        "https://example.internal/",
        httpx.Headers({"accept-encoding": "br, zstd, snappy"}),
    )
    assert upstream.last.headers["accept-encoding"] != "br, zstd, snappy"


@pytest.mark.asyncio
async def test_head_keeps_client_accept_encoding(forwarder, upstream):
    await forwarder.forward(
        "HEAD",
        "https://example.internal/big.bin",
        httpx.Headers({"accept-encoding": "identity"}),
    )
    assert upstream.last.headers["accept-encoding"] == "identity"


@pytest.mark.asyncio
async def test_forward_does_not_follow_redirects(upstream):
    upstream.handler = lambda request: httpx.Response(
        302, headers={"location": "https://example.internal/login"}
    )
    forwarder = UpstreamForwarder(
        client=httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    )

    resp = await forwarder.forward("GET", "https://example.internal/", httpx.Headers())

    assert resp.status_code == 302
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_connect_error_becomes_transport_error(forwarder, upstream):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream.handler = refuse

    with pytest.raises(UpstreamTransportError) as exc_info:
        await forwarder.forward("GET", "https://example.internal/", httpx.Headers())

    assert exc_info.value.url == "https://example.internal/"
    assert forwarder.get_stats()["failed_forwards"] == 1


@pytest.mark.asyncio
async def test_upstream_body_failure(forwarder, upstream):
    upstream.handler = lambda request: httpx.Response(200, stream=FailingStream())

    with pytest.raises(BodyReadError) as exc_info:
        await forwarder.forward("GET", "https://example.internal/", httpx.Headers())

    assert exc_info.value.side == BodyReadError.UPSTREAM
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_stream_returns_open_response(forwarder, upstream):
    upstream.handler = lambda request: httpx.Response(
        200, headers={"content-encoding": "identity"}, stream=FailingStream()
    )

    response = await forwarder.stream("GET", "https://example.internal/", httpx.Headers())
    try:
        assert response.status_code == 200
        assert response.headers["content-encoding"] == "identity"
    finally:
        await response.aclose()


@pytest.mark.asyncio
async def test_stats(forwarder):
    await forwarder.forward("GET", "https://example.internal/", httpx.Headers())
    stats = forwarder.get_stats()
    assert stats["total_forwarded"] == 1
    assert stats["successful_forwards"] == 1
    assert stats["success_rate"] == 1.0


@pytest.mark.asyncio
async def test_shutdown_leaves_injected_client_open(forwarder):
    await forwarder.shutdown()
    await forwarder.forward("GET", "https://example.internal/", httpx.Headers())


class TestClientBodyStream:
    @pytest.mark.asyncio
    async def test_yields_chunks_and_signals_completion(self):
        done = []
        stream = ClientBodyStream(chunks(b"a", b"", b"b"), on_complete=lambda: done.append(True))
        assert [c async for c in stream] == [b"a", b"b"]
        assert done == [True]

    @pytest.mark.asyncio
    async def test_read_failure_is_client_error(self):
        async def broken():
            yield b"a"
            raise RuntimeError("client went away")

        done = []
        stream = ClientBodyStream(broken(), on_complete=lambda: done.append(True))
        with pytest.raises(BodyReadError) as exc_info:
            async for _ in stream:
                pass

        assert exc_info.value.side == BodyReadError.CLIENT
        assert exc_info.value.status_code == 400
        assert done == [True]
