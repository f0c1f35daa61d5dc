"""
hproxy Domain Layer
Admission decisions and IP rule primitives.
"""

from src.domain.value_objects import (
    Decision,
    DecisionOutcome,
    IPRule,
    IPRuleSet,
    IPVersion,
)

__all__ = [
    "Decision",
    "DecisionOutcome",
    "IPRule",
    "IPRuleSet",
    "IPVersion",
]
