"""
Upstream Forwarder

Relays an admitted request to the single configured origin over a shared
HTTP client.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional
import structlog
import httpx

from src.proxy.errors import BodyReadError, UpstreamTransportError

logger = structlog.get_logger(__name__)


@dataclass
class UpstreamResponse:
    """Origin response with its body fully read."""

    status_code: int
    headers: httpx.Headers
    content: bytes = b""
    encoding: Optional[str] = None
    url: str = ""
    response_time_ms: float = 0.0

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


@dataclass
class ForwarderStats:
    """Counters kept by the forwarder."""

    total_forwarded: int = 0
    successful_forwards: int = 0
    failed_forwards: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)


def build_target_url(protocol: str, hostname: str, target: str) -> str:
    """
    Point a request target (path and query) at the origin.

    Args:
        protocol: Origin scheme
        hostname: Origin host, optionally with a port
        target: Path plus optional query string, as sent by the client
    """
    if not target.startswith("/"):
        target = f"/{target}"
    return f"{protocol}://{hostname}{target}"


class ClientBodyStream:
    """
    Async iterator over the inbound body that reports read failures as
    BodyReadError and signals when the body has been consumed.
    """

    def __init__(self, source: AsyncIterator[bytes], on_complete=None):
        self._source = source
        self._on_complete = on_complete

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        try:
            async for chunk in self._source:
                if chunk:
                    yield chunk
        except BodyReadError:
            raise
        except Exception as e:
            raise BodyReadError(f"Failed to read request body: {e}", BodyReadError.CLIENT) from e
        finally:
            if self._on_complete is not None:
                self._on_complete()


class UpstreamForwarder:
    """
    Forwards requests to the origin.

    One shared httpx.AsyncClient serves every request. Each inbound request
    gets exactly one upstream attempt; redirects are returned to the client
    rather than followed.
    """

    def __init__(
        self,
        request_timeout: float = 30.0,
        connect_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout

        # HTTP client (created lazily unless injected)
        self._client: Optional[httpx.AsyncClient] = client
        self._owns_client = client is None

        self._stats = ForwarderStats()

    async def initialize(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=self.connect_timeout,
                read=self.request_timeout,
                write=self.request_timeout,
                pool=self.connect_timeout,
            ),
            follow_redirects=False,
        )
        self._owns_client = True
        logger.info(
            "http_client_initialized",
            connect_timeout=self.connect_timeout,
            read_timeout=self.request_timeout,
        )

    async def shutdown(self) -> None:
        """Shutdown the HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.info("http_client_shutdown")

    def _build_request(
        self,
        method: str,
        url: str,
        headers: httpx.Headers,
        body: Optional[AsyncIterator[bytes]],
        decode_body: bool,
    ) -> httpx.Request:
        forward_headers = httpx.Headers(headers)
        if decode_body:
            # The client's default accept-encoding only lists decodable encodings
            forward_headers.pop("accept-encoding", None)
        try:
            return self._client.build_request(
                method=method,
                url=url,
                headers=forward_headers,
                content=body,
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise UpstreamTransportError(f"Invalid upstream URL: {e}", url=url) from e

    async def forward(
        self,
        method: str,
        url: str,
        headers: httpx.Headers,
        body: Optional[AsyncIterator[bytes]] = None,
    ) -> UpstreamResponse:
        """
        Forward a request and read the whole response body.

        Args:
            method: HTTP method of the inbound request
            url: Absolute origin URL
            headers: Already filtered request headers
            body: Inbound body stream (None when the request has no body)

        Returns:
            UpstreamResponse with the decoded body

        Raises:
            UpstreamTransportError: Connection or protocol failure
            BodyReadError: The inbound or the upstream body could not be read
        """
        if not self._client:
            await self.initialize()

        self._stats.total_forwarded += 1
        start_time = datetime.utcnow()
        # HEAD has no body to decode, so the client's accept-encoding stands
        request = self._build_request(
            method, url, headers, body, decode_body=method.upper() != "HEAD"
        )

        try:
            response = await self._client.send(request, stream=True)
        except BodyReadError:
            self._stats.failed_forwards += 1
            raise
        except httpx.HTTPError as e:
            self._stats.failed_forwards += 1
            logger.warning("upstream_request_failed", method=method, url=url, error=str(e))
            raise UpstreamTransportError(str(e) or type(e).__name__, url=url) from e

        try:
            content = await response.aread()
        except httpx.HTTPError as e:
            self._stats.failed_forwards += 1
            logger.warning("upstream_body_read_failed", url=url, error=str(e))
            raise BodyReadError(
                f"Failed to read upstream body: {e}", BodyReadError.UPSTREAM
            ) from e
        finally:
            await response.aclose()

        response_time = (datetime.utcnow() - start_time).total_seconds() * 1000
        self._stats.successful_forwards += 1

        return UpstreamResponse(
            status_code=response.status_code,
            headers=httpx.Headers(response.headers),
            content=content,
            encoding=response.charset_encoding,
            url=url,
            response_time_ms=response_time,
        )

    async def stream(
        self,
        method: str,
        url: str,
        headers: httpx.Headers,
        body: Optional[AsyncIterator[bytes]] = None,
    ) -> httpx.Response:
        """
        Forward a request and return the open response for streaming.

        The caller must close the response (``await response.aclose()``).

        Raises:
            UpstreamTransportError: Connection or protocol failure
        """
        if not self._client:
            await self.initialize()

        self._stats.total_forwarded += 1
        request = self._build_request(method, url, headers, body, decode_body=False)

        try:
            response = await self._client.send(request, stream=True)
        except BodyReadError:
            self._stats.failed_forwards += 1
            raise
        except httpx.HTTPError as e:
            self._stats.failed_forwards += 1
            logger.warning("upstream_request_failed", method=method, url=url, error=str(e))
            raise UpstreamTransportError(str(e) or type(e).__name__, url=url) from e

        self._stats.successful_forwards += 1
        return response

    def get_stats(self) -> Dict[str, Any]:
        """Get forwarder statistics."""
        total = self._stats.total_forwarded
        return {
            "total_forwarded": total,
            "successful_forwards": self._stats.successful_forwards,
            "failed_forwards": self._stats.failed_forwards,
            "success_rate": (
                self._stats.successful_forwards / total if total > 0 else 0.0
            ),
        }
