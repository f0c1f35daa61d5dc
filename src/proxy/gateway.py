"""
Reverse Proxy Gateway

Main gateway component: evaluates the admission rules for every request,
answers denied clients with a redirect or the fallback page, and relays
admitted requests to the origin with the response rewritten.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Optional
import structlog
import httpx

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse

from src.config.settings import ServerSettings, get_settings
from src.proxy.config import PolicyConfig, PolicyStore
from src.proxy.errors import BodyReadError, ClientDisconnected, UpstreamTransportError
from src.proxy.fallback import FALLBACK_PAGE
from src.proxy.forwarder import (
    ClientBodyStream,
    UpstreamForwarder,
    UpstreamResponse,
    build_target_url,
)
from src.proxy.headers import HeaderFilter
from src.proxy.inspector import RequestContext, RuleEvaluator
from src.proxy.rewriter import ResponseRewriter, RewrittenResponse

logger = structlog.get_logger(__name__)

# nginx convention for "client closed request"; never reaches the client
CLIENT_CLOSED_REQUEST = 499

# Starlette routes default to GET and HEAD only
PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"]


class ReverseProxyGateway:
    """
    Policy-gated reverse proxy for a single origin.

    Per request:
    1. Take the current policy snapshot
    2. Evaluate the admission rules
    3. Deny with a 302 redirect or the fallback page, or
    4. Forward to the origin, rewrite the response and return it
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        forwarder: Optional[UpstreamForwarder] = None,
        evaluator: Optional[RuleEvaluator] = None,
        header_filter: Optional[HeaderFilter] = None,
        rewriter: Optional[ResponseRewriter] = None,
        client_ip_header: str = "",
        region_header: str = "cf-ipcountry",
    ):
        self.policy_store = policy_store
        self.forwarder = forwarder or UpstreamForwarder()
        self.evaluator = evaluator or RuleEvaluator()
        self.header_filter = header_filter or HeaderFilter()
        self.rewriter = rewriter or ResponseRewriter(self.header_filter)
        self.client_ip_header = client_ip_header
        self.region_header = region_header

        # FastAPI app for the proxy
        self.app: Optional[FastAPI] = None

        # Statistics
        self._stats = {
            "total_requests": 0,
            "denied_requests": 0,
            "forwarded_requests": 0,
            "failed_forwards": 0,
            "client_disconnects": 0,
            "start_time": None,
        }

    def create_app(self) -> FastAPI:
        """Create the FastAPI application for the proxy gateway."""

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncGenerator:
            """Application lifespan manager."""
            logger.info("starting_reverse_proxy_gateway")
            self._stats["start_time"] = datetime.utcnow()
            await self.forwarder.initialize()

            yield

            logger.info("shutting_down_reverse_proxy_gateway", **self._counters())
            await self.forwarder.shutdown()

        # Docs and schema routes would shadow origin paths
        self.app = FastAPI(
            title="hproxy",
            version="0.1.0",
            lifespan=lifespan,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

        async def proxy_request(request: Request) -> Response:
            """Proxy every method and path through the gateway."""
            return await self.handle(request)

        self.app.add_route(
            "/{path:path}", proxy_request, methods=PROXIED_METHODS, include_in_schema=False
        )

        @self.app.exception_handler(Exception)
        async def global_exception_handler(request: Request, exc: Exception):
            logger.error(
                "unhandled_exception",
                method=request.method,
                path=request.url.path,
                error=str(exc),
            )
            return PlainTextResponse("Internal Server Error", status_code=500)

        return self.app

    async def handle(self, request: Request) -> Response:
        """Run one request through the admission and forwarding pipeline."""
        self._stats["total_requests"] += 1

        cfg = await self.policy_store.acurrent()
        ctx = self.build_context(request)

        decision = self.evaluator.evaluate(ctx, cfg)
        if not decision.allowed:
            self._stats["denied_requests"] += 1
            self._log_request("request_denied", ctx, reason=decision.reason)
            return self._deny_response(cfg)

        self._log_request("request_allowed", ctx)

        try:
            upstream = await self._forward(request, ctx, cfg)
        except ClientDisconnected:
            self._stats["client_disconnects"] += 1
            self._log_request("client_disconnected", ctx)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except UpstreamTransportError as e:
            self._stats["failed_forwards"] += 1
            self._log_request("forward_failed", ctx, error=str(e), level="error")
            return PlainTextResponse("Internal Server Error", status_code=500)
        except BodyReadError as e:
            self._stats["failed_forwards"] += 1
            self._log_request("body_read_failed", ctx, side=e.side, error=str(e), level="error")
            if e.status_code == 400:
                return PlainTextResponse("Bad Request", status_code=400)
            return PlainTextResponse("Internal Server Error", status_code=500)

        self._stats["forwarded_requests"] += 1
        public_hostname = cfg.public_hostname or ctx.host
        rewritten = self.rewriter.rewrite(upstream, cfg, public_hostname, method=ctx.method)
        return self._build_response(rewritten)

    def build_context(self, request: Request) -> RequestContext:
        """Extract the request attributes the rules are evaluated against."""
        return RequestContext(
            method=request.method,
            path=request.url.path,
            raw_path=raw_request_path(request),
            query=request.url.query,
            headers=httpx.Headers(request.headers.items()),
            client_ip=self._get_client_ip(request),
            client_region=request.headers.get(self.region_header, "").strip()
            if self.region_header
            else "",
            host=request.url.hostname or "",
            url=str(request.url),
        )

    async def _forward(
        self,
        request: Request,
        ctx: RequestContext,
        cfg: PolicyConfig,
    ) -> UpstreamResponse:
        """
        Forward to the origin, cancelling the upstream call if the client
        disconnects first.
        """
        url = build_target_url(cfg.protocol, cfg.hostname, ctx.target)
        headers = self.header_filter.filter_inbound(ctx.headers)

        body_consumed = asyncio.Event()
        if ctx.has_body:
            ctx.body = ClientBodyStream(request.stream(), on_complete=body_consumed.set)
        else:
            body_consumed.set()

        forward_task = asyncio.ensure_future(
            self.forwarder.forward(ctx.method, url, headers, ctx.body)
        )
        disconnect_task = asyncio.ensure_future(
            self._wait_for_disconnect(request, body_consumed)
        )

        try:
            await asyncio.wait(
                {forward_task, disconnect_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            forward_task.cancel()
            disconnect_task.cancel()
            raise

        if forward_task.done():
            await _cancel_and_wait(disconnect_task)
            return forward_task.result()

        await _cancel_and_wait(forward_task)
        raise ClientDisconnected(f"Client disconnected during {ctx.method} {url}")

    @staticmethod
    async def _wait_for_disconnect(request: Request, body_consumed: asyncio.Event) -> None:
        # Reading receive() before the body is consumed would steal body chunks
        await body_consumed.wait()
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return

    def _deny_response(self, cfg: PolicyConfig) -> Response:
        if cfg.redirect_url:
            return RedirectResponse(cfg.redirect_url, status_code=302)
        return HTMLResponse(FALLBACK_PAGE, status_code=500)

    def _build_response(self, rewritten: RewrittenResponse) -> Response:
        response = Response(content=rewritten.body, status_code=rewritten.status_code)
        # A kept upstream content-length (HEAD) replaces the computed one
        if "content-length" in rewritten.headers and "content-length" in response.headers:
            del response.headers["content-length"]
        for name, value in rewritten.headers.multi_items():
            response.headers.append(name, value)
        return response

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP from the trusted header or the peer address."""
        if self.client_ip_header:
            forwarded = request.headers.get(self.client_ip_header)
            if forwarded:
                return forwarded.split(",")[0].strip()

        if request.client:
            return request.client.host

        return ""

    def _log_request(
        self, event: str, ctx: RequestContext, level: Optional[str] = None, **kw
    ) -> None:
        if level is None:
            level = "info" if event == "request_allowed" else "warning"
        getattr(logger, level)(
            event,
            method=ctx.method,
            client_ip=ctx.client_ip,
            user_agent=ctx.user_agent,
            url=ctx.url,
            **kw,
        )

    def _counters(self) -> Dict[str, Any]:
        return {k: v for k, v in self._stats.items() if k != "start_time"}

    def get_stats(self) -> Dict[str, Any]:
        """Get gateway statistics."""
        uptime = None
        if self._stats["start_time"]:
            uptime = (datetime.utcnow() - self._stats["start_time"]).total_seconds()

        return {
            **self._counters(),
            "uptime_seconds": uptime,
            "policy_reloads": self.policy_store.reloads,
            "forwarder": self.forwarder.get_stats(),
        }


def raw_request_path(request: Request) -> str:
    """Path as sent by the client, without the query string."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return ""
    return raw_path.decode("latin-1").split("?", 1)[0]


async def _cancel_and_wait(task: "asyncio.Future") -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def create_proxy_app(
    server: Optional[ServerSettings] = None,
    policy_store: Optional[PolicyStore] = None,
    forwarder: Optional[UpstreamForwarder] = None,
) -> FastAPI:
    """
    Create a FastAPI application for the reverse proxy gateway.

    Args:
        server: Server settings (or load from environment)
        policy_store: Policy snapshot source (or watch the configured files)
        forwarder: Upstream forwarder (or build one from the settings)

    Returns:
        Configured FastAPI application

    Raises:
        ConfigurationError: If the initial policy cannot be loaded
    """
    if server is None:
        server = get_settings()

    if policy_store is None:
        policy_store = PolicyStore.from_sources(server.config_file, server.env_file)

    if forwarder is None:
        forwarder = UpstreamForwarder(
            request_timeout=server.read_timeout,
            connect_timeout=server.connect_timeout,
        )

    gateway = ReverseProxyGateway(
        policy_store=policy_store,
        forwarder=forwarder,
        client_ip_header=server.client_ip_header,
        region_header=server.region_header,
    )
    return gateway.create_app()
