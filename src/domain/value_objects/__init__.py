"""Domain Value Objects - Immutable domain primitives."""

from src.domain.value_objects.decision import Decision, DecisionOutcome
from src.domain.value_objects.ip_address import (
    IPRule,
    IPRuleSet,
    IPVersion,
    parse_client_ip,
)

__all__ = [
    "Decision",
    "DecisionOutcome",
    "IPRule",
    "IPRuleSet",
    "IPVersion",
    "parse_client_ip",
]
