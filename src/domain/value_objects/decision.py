"""
Decision Value Object
Outcome of evaluating the admission rules for one request.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class DecisionOutcome(str, Enum):
    """Admission outcomes."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Decision:
    """
    Value object representing an admission decision.

    Attributes:
        outcome: Allow or deny
        reason: Why the request was denied (None when allowed)
    """

    outcome: DecisionOutcome
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.outcome == DecisionOutcome.DENY and not self.reason:
            raise ValueError("A deny decision needs a reason")
        if self.outcome == DecisionOutcome.ALLOW and self.reason is not None:
            raise ValueError("An allow decision carries no reason")

    @classmethod
    def allow(cls) -> "Decision":
        return cls(outcome=DecisionOutcome.ALLOW)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(outcome=DecisionOutcome.DENY, reason=reason)

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.ALLOW

    def __str__(self) -> str:
        if self.allowed:
            return self.outcome.value
        return f"{self.outcome.value}: {self.reason}"
