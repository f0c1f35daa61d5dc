"""
Policy Configuration

Immutable policy snapshot consumed by the proxy pipeline, and the store that
swaps snapshots when the configuration sources change.
"""

import asyncio
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Pattern, Sequence, Tuple

import structlog

from src.config.settings import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_ENV_FILE,
    ProxySettings,
    load_proxy_settings,
)
from src.domain.value_objects.ip_address import IPRuleSet
from src.proxy.errors import ConfigurationError

logger = structlog.get_logger(__name__)

WORD_CHAR = "[A-Za-z0-9_]"


def compile_pattern(name: str, pattern: str) -> Optional[Pattern[str]]:
    """
    Compile an optional rule pattern.

    Returns:
        None for an empty pattern (no restriction)

    Raises:
        ConfigurationError: If the pattern is not a valid regex
    """
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"Invalid {name}: {pattern!r} ({e})") from e


def build_hostname_pattern(hostname: str, pathname_regex: str = "") -> Optional[Pattern[str]]:
    """
    Build the whole-word hostname pattern used to rewrite text bodies.

    Word characters are ASCII only ([A-Za-z0-9_]), so a neighbouring
    non-ASCII letter does not block a match.

    With a pathname regex, only occurrences immediately followed by a match
    of that regex (leading "^" removed) qualify; the suffix is group 1.
    """
    if not hostname:
        return None

    host = re.escape(hostname)
    if pathname_regex:
        suffix = pathname_regex[1:] if pathname_regex.startswith("^") else pathname_regex
        pattern = rf"(?<!{WORD_CHAR}){host}(?!{WORD_CHAR})({suffix})"
    else:
        pattern = rf"(?<!{WORD_CHAR}){host}(?!{WORD_CHAR})"

    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"Invalid rewrite pattern for {hostname!r}: {e}") from e


@dataclass(frozen=True)
class PolicyConfig:
    """
    Read-only policy snapshot for the proxy pipeline.

    Empty patterns are stored as None and empty lists as empty rule sets;
    both mean "no restriction on that dimension".

    Attributes:
        hostname: Origin host (optionally host:port)
        protocol: Origin scheme, http or https
        pathname_regex: Source text of the path pattern
        path_pattern: Compiled path pattern
        ua_whitelist / ua_blacklist: Compiled user-agent patterns
        ip_whitelist / ip_blacklist: Compiled client-IP patterns
        ip_rules: Literal IP lists (take precedence over the IP patterns)
        region_whitelist / region_blacklist: Compiled region patterns
        redirect_url: Where denied requests are redirected (302)
        debug: Relax response headers and log full snapshots
        public_hostname: Hostname written into rewritten bodies
        hostname_pattern: Compiled body rewrite pattern
    """

    hostname: str = ""
    protocol: str = "https"
    pathname_regex: str = ""
    path_pattern: Optional[Pattern[str]] = None
    ua_whitelist: Optional[Pattern[str]] = None
    ua_blacklist: Optional[Pattern[str]] = None
    ip_whitelist: Optional[Pattern[str]] = None
    ip_blacklist: Optional[Pattern[str]] = None
    ip_rules: IPRuleSet = field(default_factory=IPRuleSet)
    region_whitelist: Optional[Pattern[str]] = None
    region_blacklist: Optional[Pattern[str]] = None
    redirect_url: str = ""
    debug: bool = False
    public_hostname: str = ""
    hostname_pattern: Optional[Pattern[str]] = None

    @classmethod
    def from_settings(cls, settings: ProxySettings) -> "PolicyConfig":
        """
        Compile a snapshot from loaded settings.

        Raises:
            ConfigurationError: If any pattern fails to compile
        """
        return cls(
            hostname=settings.hostname,
            protocol=settings.protocol,
            pathname_regex=settings.pathname_regex,
            path_pattern=compile_pattern("PATHNAME_REGEX", settings.pathname_regex),
            ua_whitelist=compile_pattern("UA_WHITELIST_REGEX", settings.ua_whitelist_regex),
            ua_blacklist=compile_pattern("UA_BLACKLIST_REGEX", settings.ua_blacklist_regex),
            ip_whitelist=compile_pattern("IP_WHITELIST_REGEX", settings.ip_whitelist_regex),
            ip_blacklist=compile_pattern("IP_BLACKLIST_REGEX", settings.ip_blacklist_regex),
            ip_rules=IPRuleSet.from_lists(settings.ip_whitelist, settings.ip_blacklist),
            region_whitelist=compile_pattern(
                "REGION_WHITELIST_REGEX", settings.region_whitelist_regex
            ),
            region_blacklist=compile_pattern(
                "REGION_BLACKLIST_REGEX", settings.region_blacklist_regex
            ),
            redirect_url=settings.redirect_url,
            debug=settings.debug,
            public_hostname=settings.public_hostname,
            hostname_pattern=build_hostname_pattern(
                settings.hostname, settings.pathname_regex
            ),
        )

    @classmethod
    def build(cls, **values: Any) -> "PolicyConfig":
        """Compile a snapshot from settings values given by alias or field name."""
        return cls.from_settings(ProxySettings(_env_file=None, **values))

    @classmethod
    def load(
        cls,
        config_file: Optional[Path] = DEFAULT_CONFIG_FILE,
        env_file: Optional[Path] = DEFAULT_ENV_FILE,
    ) -> "PolicyConfig":
        """
        Load settings from their sources and compile a snapshot.

        Raises:
            ConfigurationError: If loading or compiling fails
        """
        try:
            settings = load_proxy_settings(config_file, env_file)
        except (ValueError, OSError) as e:
            raise ConfigurationError(str(e)) from e
        return cls.from_settings(settings)

    @property
    def origin(self) -> str:
        """Scheme and authority of the origin."""
        return f"{self.protocol}://{self.hostname}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (patterns as their source text)."""

        def source(p: Optional[Pattern[str]]) -> str:
            return p.pattern if p is not None else ""

        return {
            "hostname": self.hostname,
            "protocol": self.protocol,
            "pathname_regex": self.pathname_regex,
            "ua_whitelist_regex": source(self.ua_whitelist),
            "ua_blacklist_regex": source(self.ua_blacklist),
            "ip_whitelist_regex": source(self.ip_whitelist),
            "ip_blacklist_regex": source(self.ip_blacklist),
            "ip_lists": self.ip_rules.to_dict(),
            "region_whitelist_regex": source(self.region_whitelist),
            "region_blacklist_regex": source(self.region_blacklist),
            "redirect_url": self.redirect_url,
            "debug": self.debug,
            "public_hostname": self.public_hostname,
        }


class PolicyStore:
    """
    Holds the current policy snapshot and swaps it when its sources change.

    Snapshots are never mutated; a reload builds a new one and replaces the
    reference. A failed reload keeps serving the previous snapshot.
    """

    def __init__(
        self,
        loader: Callable[[], PolicyConfig],
        watch_paths: Sequence[Path] = (),
    ):
        self._loader = loader
        self._watch_paths: Tuple[Path, ...] = tuple(Path(p) for p in watch_paths)
        self._lock = threading.Lock()
        self._fingerprint = self._stat()
        self._snapshot = loader()
        self._reloads = 0
        self._log_snapshot("policy_loaded", self._snapshot)

    @classmethod
    def from_sources(
        cls,
        config_file: Optional[Path] = DEFAULT_CONFIG_FILE,
        env_file: Optional[Path] = DEFAULT_ENV_FILE,
    ) -> "PolicyStore":
        """Store that reloads from the config file / env file when they change."""
        paths = [p for p in (config_file, env_file) if p is not None]
        return cls(
            loader=lambda: PolicyConfig.load(config_file, env_file),
            watch_paths=paths,
        )

    @classmethod
    def static(cls, snapshot: PolicyConfig) -> "PolicyStore":
        """Store that always serves the same snapshot."""
        return cls(loader=lambda: snapshot)

    def current(self) -> PolicyConfig:
        """Get the snapshot for a new request, reloading if a source changed."""
        with self._lock:
            fingerprint = self._stat()
            if fingerprint != self._fingerprint:
                self._fingerprint = fingerprint
                self.reload()
            return self._snapshot

    async def acurrent(self) -> PolicyConfig:
        """
        Like current(), for use on the event loop.

        Only the stat runs on the loop; a changed source is re-read and
        validated in a worker thread.
        """
        if self._stat() == self._fingerprint:
            return self._snapshot
        return await asyncio.to_thread(self.current)

    def reload(self) -> PolicyConfig:
        """Rebuild the snapshot now."""
        try:
            snapshot = self._loader()
        except ConfigurationError as e:
            logger.error("policy_reload_failed", error=str(e))
            return self._snapshot

        self._snapshot = snapshot
        self._reloads += 1
        self._log_snapshot("policy_reloaded", snapshot)
        return snapshot

    @property
    def reloads(self) -> int:
        return self._reloads

    def _stat(self) -> Tuple[Tuple[str, Optional[int]], ...]:
        fingerprint = []
        for path in self._watch_paths:
            try:
                mtime = path.stat().st_mtime_ns
            except OSError:
                mtime = None
            fingerprint.append((str(path), mtime))
        return tuple(fingerprint)

    @staticmethod
    def _log_snapshot(event: str, snapshot: PolicyConfig) -> None:
        if snapshot.debug:
            logger.info(event, **snapshot.to_dict())
        else:
            logger.info(event, origin=snapshot.origin)
