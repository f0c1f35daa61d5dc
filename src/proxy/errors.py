"""
Proxy Errors

Request-scoped failures raised by the pipeline and mapped to responses by
the gateway.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for proxy pipeline errors."""


class ConfigurationError(ProxyError):
    """The policy configuration cannot be loaded or compiled."""


class UpstreamTransportError(ProxyError):
    """The upstream request failed at the connection or protocol level."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class BodyReadError(ProxyError):
    """
    Reading a message body failed.

    Attributes:
        side: "client" for the inbound body, "upstream" for the origin response
    """

    CLIENT = "client"
    UPSTREAM = "upstream"

    def __init__(self, message: str, side: str):
        super().__init__(message)
        self.side = side

    @property
    def status_code(self) -> int:
        return 400 if self.side == self.CLIENT else 500


class ClientDisconnected(ProxyError):
    """The inbound client went away before the response was ready."""
