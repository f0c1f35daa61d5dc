"""
hproxy Reverse Proxy Module

Admission rules, forwarding and response rewriting for a single origin.
"""

from src.proxy.config import PolicyConfig, PolicyStore
from src.proxy.forwarder import UpstreamForwarder, UpstreamResponse
from src.proxy.gateway import ReverseProxyGateway, create_proxy_app
from src.proxy.headers import HeaderFilter
from src.proxy.inspector import RequestContext, RuleEvaluator
from src.proxy.passthrough import PassthroughGateway, create_passthrough_app
from src.proxy.rewriter import ResponseRewriter

__all__ = [
    "PolicyConfig",
    "PolicyStore",
    "UpstreamForwarder",
    "UpstreamResponse",
    "ReverseProxyGateway",
    "create_proxy_app",
    "HeaderFilter",
    "RequestContext",
    "RuleEvaluator",
    "PassthroughGateway",
    "create_passthrough_app",
    "ResponseRewriter",
]
