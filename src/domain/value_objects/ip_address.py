"""
IP Rule Value Objects
Immutable exact-address and CIDR rules used by the admission lists.
"""

import ipaddress
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddressValue = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class IPVersion(str, Enum):
    """IP address version."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"


def parse_client_ip(address: Optional[str]) -> Optional[IPAddressValue]:
    """
    Parse a client address, tolerating brackets and IPv6 zone ids.

    Returns:
        The parsed address, or None when it is not a valid IP
    """
    if not address:
        return None
    text = address.strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    # IPv4-mapped IPv6 peers (::ffff:10.0.0.5) are matched as IPv4
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


@dataclass(frozen=True)
class IPRule:
    """
    A single list entry: either an exact address or a CIDR network.

    Attributes:
        raw: The entry as written in the configuration
        network: The parsed network (exact addresses become /32 or /128)
        is_cidr: Whether the entry was written in CIDR notation
    """

    raw: str
    network: IPNetwork
    is_cidr: bool

    @classmethod
    def from_string(cls, entry: str) -> "IPRule":
        """
        Parse a list entry.

        Raises:
            ValueError: If the entry is neither an IP address nor a CIDR network
        """
        text = entry.strip()
        try:
            if "/" in text:
                return cls(
                    raw=entry,
                    network=ipaddress.ip_network(text, strict=False),
                    is_cidr=True,
                )
            address = ipaddress.ip_address(text)
            return cls(
                raw=entry,
                network=ipaddress.ip_network(address),
                is_cidr=False,
            )
        except ValueError as e:
            raise ValueError(f"Invalid IP or CIDR: {entry}") from e

    @property
    def version(self) -> IPVersion:
        return IPVersion.IPV4 if self.network.version == 4 else IPVersion.IPV6

    def contains(self, ip: IPAddressValue) -> bool:
        """Check if an address is covered by this rule."""
        if ip.version != self.network.version:
            return False
        return ip in self.network

    def __str__(self) -> str:
        return self.raw


@dataclass(frozen=True)
class IPRuleSet:
    """
    Literal IP whitelist/blacklist pair.

    The whitelist is evaluated first: a whitelisted address is admitted even
    if the blacklist covers it too. When a whitelist exists, addresses outside
    it are rejected.
    """

    whitelist: Tuple[IPRule, ...] = ()
    blacklist: Tuple[IPRule, ...] = ()

    @classmethod
    def from_lists(
        cls,
        whitelist: Iterable[str] = (),
        blacklist: Iterable[str] = (),
    ) -> "IPRuleSet":
        """Build a rule set, skipping entries that do not parse."""
        return cls(
            whitelist=tuple(_parse_entries(whitelist, "whitelist")),
            blacklist=tuple(_parse_entries(blacklist, "blacklist")),
        )

    @property
    def is_empty(self) -> bool:
        return not self.whitelist and not self.blacklist

    def check(self, client_ip: Optional[str]) -> Optional[str]:
        """
        Check a client address against the lists.

        Returns:
            None when the address is admitted, otherwise the rejection reason
        """
        if self.is_empty:
            return None

        ip = parse_client_ip(client_ip)
        if ip is None:
            return "invalid client ip"

        if any(rule.contains(ip) for rule in self.whitelist):
            return None

        if any(rule.contains(ip) for rule in self.blacklist):
            return "client ip blacklisted"

        if self.whitelist:
            return "client ip not whitelisted"

        return None

    def to_dict(self) -> dict:
        return {
            "whitelist": [str(rule) for rule in self.whitelist],
            "blacklist": [str(rule) for rule in self.blacklist],
        }


def _parse_entries(entries: Iterable[str], list_name: str) -> List[IPRule]:
    rules = []
    for entry in entries:
        try:
            rules.append(IPRule.from_string(entry))
        except ValueError:
            logger.warning("invalid_ip_list_entry", list=list_name, entry=entry)
    return rules
