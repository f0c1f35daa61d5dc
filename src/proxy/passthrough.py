"""
Passthrough Gateway

Rule-less proxy mode: every request is relayed to one target host and the
response is streamed back unchanged.
"""

import ipaddress
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import structlog
import httpx

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from src.proxy.errors import BodyReadError, UpstreamTransportError
from src.proxy.forwarder import ClientBodyStream, UpstreamForwarder, build_target_url
from src.proxy.gateway import PROXIED_METHODS, raw_request_path
from src.proxy.headers import HeaderFilter

logger = structlog.get_logger(__name__)


def is_ip_address(host: str) -> bool:
    """Check if a target host (optionally with a port) is a literal IP."""
    candidates = [host]
    if host.startswith("["):
        candidates.append(host[1:].split("]", 1)[0])
    elif host.count(":") == 1:
        candidates.append(host.split(":", 1)[0])

    for candidate in candidates:
        try:
            ipaddress.ip_address(candidate)
            return True
        except ValueError:
            continue
    return False


def select_protocol(inbound_scheme: str, target_host: str) -> str:
    """Plain http is only used for http requests aimed at a literal IP."""
    if inbound_scheme == "http" and is_ip_address(target_host):
        return "http"
    return "https"


class PassthroughGateway:
    """Streams every request to a fixed target host."""

    def __init__(
        self,
        target_host: str,
        forwarder: Optional[UpstreamForwarder] = None,
        header_filter: Optional[HeaderFilter] = None,
    ):
        if not target_host:
            raise ValueError("A target host is required")
        self.target_host = target_host
        self.forwarder = forwarder or UpstreamForwarder()
        self.header_filter = header_filter or HeaderFilter()
        self.app: Optional[FastAPI] = None

    def create_app(self) -> FastAPI:
        """Create the FastAPI application for passthrough mode."""

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncGenerator:
            logger.info("starting_passthrough_gateway", target_host=self.target_host)
            await self.forwarder.initialize()
            yield
            logger.info("shutting_down_passthrough_gateway")
            await self.forwarder.shutdown()

        self.app = FastAPI(
            title="hproxy passthrough",
            version="0.1.0",
            lifespan=lifespan,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

        async def proxy_request(request: Request) -> Response:
            return await self.handle(request)

        self.app.add_route(
            "/{path:path}", proxy_request, methods=PROXIED_METHODS, include_in_schema=False
        )
        return self.app

    async def handle(self, request: Request) -> Response:
        """Relay one request and stream the response back."""
        protocol = select_protocol(request.url.scheme, self.target_host)
        target = raw_request_path(request) or request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        url = build_target_url(protocol, self.target_host, target)

        headers = self.header_filter.filter_inbound(request.headers.items())
        body = None
        if "content-length" in headers or "transfer-encoding" in headers:
            body = ClientBodyStream(request.stream())

        try:
            upstream = await self.forwarder.stream(request.method, url, headers, body)
        except (UpstreamTransportError, BodyReadError) as e:
            logger.error(
                "passthrough_request_failed",
                method=request.method,
                url=url,
                error=str(e),
            )
            return PlainTextResponse("Internal Server Error", status_code=500)

        response = StreamingResponse(
            self._relay(upstream, url),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        for name, value in self.header_filter.filter_streamed(upstream.headers).multi_items():
            response.headers.append(name, value)
        return response

    @staticmethod
    async def _relay(upstream: httpx.Response, url: str):
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already sent; the client sees a truncated body
            logger.error("passthrough_relay_failed", url=url, error=str(e))


def create_passthrough_app(
    target_host: str,
    forwarder: Optional[UpstreamForwarder] = None,
) -> FastAPI:
    """Create the passthrough FastAPI application for ``target_host``."""
    gateway = PassthroughGateway(target_host=target_host, forwarder=forwarder)
    return gateway.create_app()
