"""
Pre-flight balance guardrail.

A billable operation is only attempted when the user's balance covers the
estimated cost. The real charge is settled after the vendor call.
"""

from dataclasses import dataclass
from enum import Enum


class Feature(Enum):
    """Billable features, as stored on usage records."""
    CHAT = "chat"
    ANALYSIS = "analysis"
    EA_GENERATOR = "ea-generator"


_FEATURE_ACTIONS = {
    Feature.CHAT: "continue the chat",
    Feature.ANALYSIS: "analyze a chart",
    Feature.EA_GENERATOR: "generate an EA",
}


class InsufficientTokens(Exception):
    """Raised when the balance does not cover the estimated cost."""
    def __init__(self, required: int, available: int, feature: Feature):
        self.required = required
        self.available = available
        self.feature = feature
        super().__init__(
            f"Insufficient tokens. You need {required} tokens to {_FEATURE_ACTIONS[feature]}."
        )


@dataclass(frozen=True)
class PreflightResult:
    """Outcome of a balance check before a billable operation."""
    allowed: bool
    balance: int
    required: int
    feature: Feature

    def raise_if_insufficient(self) -> "PreflightResult":
        """Raise InsufficientTokens unless the operation is allowed."""
        if not self.allowed:
            raise InsufficientTokens(self.required, self.balance, self.feature)
        return self


def check_token_balance(balance: int, required: int, feature: Feature) -> PreflightResult:
    """Compare a balance with the estimated cost of ``feature``.

    Args:
        balance: Current app-token balance
        required: Estimated cost in app tokens
        feature: Feature being charged

    Returns:
        PreflightResult with ``allowed`` set when balance >= required
    """
    if required < 0:
        raise ValueError("required cannot be negative")
    return PreflightResult(
        allowed=balance >= required,
        balance=balance,
        required=required,
        feature=feature
    )
