"""
Header Filter

Drop-list filtering for headers crossing the proxy. Header values are never
rewritten in either direction.
"""

from typing import Iterable, Tuple, Union

import httpx

HeaderItems = Union[httpx.Headers, Iterable[Tuple[str, str]]]

# Prefixes of headers added by edge networks and intermediaries
FILTERED_PREFIXES = ("cf-", "x-")

# Headers that describe the inbound hop rather than the request
FILTERED_HEADERS = frozenset({
    "connection",
    "origin",
    "referer",
    "host",
    "authority",
    "link",
})

# Framing headers that no longer describe a re-materialized response body
FRAMING_HEADERS = frozenset({
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
    "keep-alive",
})

CSP_HEADER = "content-security-policy"


def _items(headers: HeaderItems):
    if isinstance(headers, httpx.Headers):
        return headers.multi_items()
    return list(headers)


class HeaderFilter:
    """Filters inbound request headers and outbound response headers."""

    @staticmethod
    def is_filtered(name: str) -> bool:
        """Check if an inbound header must not reach the origin."""
        lower = name.lower()
        if lower.startswith(FILTERED_PREFIXES):
            return True
        return lower in FILTERED_HEADERS

    def filter_inbound(self, headers: HeaderItems) -> httpx.Headers:
        """
        Build the header set forwarded to the origin.

        Order and duplicate values of the kept headers are preserved.
        """
        return httpx.Headers(
            [(name, value) for name, value in _items(headers) if not self.is_filtered(name)]
        )

    def filter_outbound(self, headers: HeaderItems, debug: bool = False) -> httpx.Headers:
        """
        Build the header set returned to the client for a materialized body.

        In debug mode the content-security-policy header is dropped so pages
        can load resources through the proxy hostname.
        """
        kept = []
        for name, value in _items(headers):
            lower = name.lower()
            if lower in FRAMING_HEADERS:
                continue
            if debug and lower == CSP_HEADER:
                continue
            kept.append((name, value))
        return httpx.Headers(kept)

    def filter_streamed(self, headers: HeaderItems, debug: bool = False) -> httpx.Headers:
        """Response headers for a body relayed unchanged (raw bytes or none)."""
        hop_by_hop = FRAMING_HEADERS - {"content-length", "content-encoding"}
        kept = []
        for name, value in _items(headers):
            lower = name.lower()
            if lower in hop_by_hop:
                continue
            if debug and lower == CSP_HEADER:
                continue
            kept.append((name, value))
        return httpx.Headers(kept)
