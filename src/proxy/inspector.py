"""
Rule Evaluator

Decides whether an incoming request may be forwarded to the origin.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Optional, Pattern

import httpx

from src.domain.value_objects.decision import Decision
from src.proxy.config import PolicyConfig


@dataclass
class RequestContext:
    """Context about an incoming request."""

    method: str
    path: str
    headers: httpx.Headers
    client_ip: str = ""
    client_region: str = ""
    query: str = ""
    raw_path: str = ""
    host: str = ""
    url: str = ""
    body: Optional[AsyncIterator[bytes]] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def has_body(self) -> bool:
        if "transfer-encoding" in self.headers:
            return True
        return self.headers.get("content-length", "0").strip() not in ("", "0")

    @property
    def target(self) -> str:
        """Path (as encoded by the client) and query."""
        path = self.raw_path or self.path
        if self.query:
            return f"{path}?{self.query}"
        return path


class RuleEvaluator:
    """
    Evaluates the admission rules of a policy snapshot.

    Checks run in a fixed order and stop at the first failure, whose message
    becomes the deny reason:

    1. an origin hostname is configured
    2. the path matches the pathname pattern
    3. the user agent passes the whitelist/blacklist patterns
    4. the client IP passes the literal lists, or the IP patterns when no
       literal list is configured
    5. the client region passes the region patterns (only when a region was
       supplied)

    A rule whose pattern or list is empty never restricts anything.
    """

    def evaluate(self, ctx: RequestContext, cfg: PolicyConfig) -> Decision:
        """
        Evaluate a request against a policy snapshot.

        Args:
            ctx: The request being admitted
            cfg: The policy snapshot for this request

        Returns:
            Decision.allow() or Decision.deny(reason)
        """
        if not cfg.hostname:
            return Decision.deny("no origin configured")

        if cfg.path_pattern is not None and not cfg.path_pattern.search(ctx.path):
            return Decision.deny("path not allowed")

        reason = self._check_user_agent(ctx.user_agent.lower(), cfg)
        if reason:
            return Decision.deny(reason)

        reason = self._check_client_ip(ctx.client_ip, cfg)
        if reason:
            return Decision.deny(reason)

        reason = self._check_region(ctx.client_region, cfg)
        if reason:
            return Decision.deny(reason)

        return Decision.allow()

    def _check_user_agent(self, user_agent: str, cfg: PolicyConfig) -> Optional[str]:
        return _check_pair(
            user_agent,
            cfg.ua_whitelist,
            cfg.ua_blacklist,
            not_whitelisted="user agent not whitelisted",
            blacklisted="user agent blacklisted",
        )

    def _check_client_ip(self, client_ip: str, cfg: PolicyConfig) -> Optional[str]:
        # Literal lists are authoritative when present; patterns are the fallback
        if not cfg.ip_rules.is_empty:
            return cfg.ip_rules.check(client_ip)

        return _check_pair(
            client_ip,
            cfg.ip_whitelist,
            cfg.ip_blacklist,
            not_whitelisted="client ip not whitelisted",
            blacklisted="client ip blacklisted",
        )

    def _check_region(self, region: str, cfg: PolicyConfig) -> Optional[str]:
        if not region:
            return None

        return _check_pair(
            region,
            cfg.region_whitelist,
            cfg.region_blacklist,
            not_whitelisted="region not whitelisted",
            blacklisted="region blacklisted",
        )


def _check_pair(
    value: str,
    whitelist: Optional[Pattern[str]],
    blacklist: Optional[Pattern[str]],
    not_whitelisted: str,
    blacklisted: str,
) -> Optional[str]:
    if whitelist is not None and not whitelist.search(value):
        return not_whitelisted
    if blacklist is not None and blacklist.search(value):
        return blacklisted
    return None
