"""
Response Rewriter

Turns an origin response into the response returned to the client: header
filtering plus hostname substitution in text bodies.
"""

import codecs
from dataclasses import dataclass
from typing import Optional

import httpx

from src.proxy.config import PolicyConfig
from src.proxy.forwarder import UpstreamResponse
from src.proxy.headers import HeaderFilter

DEFAULT_CHARSET = "utf-8"


@dataclass
class RewrittenResponse:
    """Response ready to be written downstream."""

    status_code: int
    headers: httpx.Headers
    body: bytes
    rewritten: bool = False


def is_text_content(content_type: str) -> bool:
    return "text/" in content_type.lower()


def resolve_charset(encoding: Optional[str]) -> str:
    """Return a codec name Python knows, falling back to UTF-8."""
    if not encoding:
        return DEFAULT_CHARSET
    try:
        return codecs.lookup(encoding).name
    except LookupError:
        return DEFAULT_CHARSET


def substitute_hostname(text: str, cfg: PolicyConfig, public_hostname: str) -> str:
    """
    Replace whole-word occurrences of the origin hostname.

    With a pathname regex in the snapshot the captured path suffix is kept
    after the replacement hostname.
    """
    pattern = cfg.hostname_pattern
    if pattern is None or not public_hostname:
        return text

    if pattern.groups:
        return pattern.sub(lambda m: public_hostname + m.group(1), text)
    return pattern.sub(lambda m: public_hostname, text)


class ResponseRewriter:
    """Rewrites origin responses for the externally visible hostname."""

    def __init__(self, header_filter: Optional[HeaderFilter] = None):
        self.header_filter = header_filter or HeaderFilter()

    def rewrite(
        self,
        resp: UpstreamResponse,
        cfg: PolicyConfig,
        public_hostname: str,
        method: str = "GET",
    ) -> RewrittenResponse:
        """
        Rewrite headers and, for text content, the body.

        A HEAD response has no body, so its content-length and
        content-encoding describe the origin representation and are kept.

        Args:
            resp: Origin response with its body fully read
            cfg: Policy snapshot of the request
            public_hostname: Hostname clients use to reach the proxy
            method: Method of the inbound request

        Returns:
            RewrittenResponse carrying the upstream status code unchanged
        """
        if method.upper() == "HEAD":
            return RewrittenResponse(
                status_code=resp.status_code,
                headers=self.header_filter.filter_streamed(resp.headers, debug=cfg.debug),
                body=b"",
            )

        headers = self.header_filter.filter_outbound(resp.headers, debug=cfg.debug)

        if not is_text_content(resp.content_type):
            return RewrittenResponse(
                status_code=resp.status_code,
                headers=headers,
                body=resp.content,
            )

        charset = resolve_charset(resp.encoding)
        # surrogateescape keeps undecodable bytes intact through the round trip
        try:
            text = resp.content.decode(charset, errors="surrogateescape")
            body = substitute_hostname(text, cfg, public_hostname).encode(
                charset, errors="surrogateescape"
            )
        except UnicodeError:
            return RewrittenResponse(
                status_code=resp.status_code,
                headers=headers,
                body=resp.content,
            )

        return RewrittenResponse(
            status_code=resp.status_code,
            headers=headers,
            body=body,
            rewritten=body != resp.content,
        )
