"""
Token counting and usage tracking.

Holds vendor-reported token counts and the fixed estimates used for
pre-flight balance checks.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the vendor, or one of the
    fixed estimates below.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_api_usage(cls, usage: Any) -> Optional["TokenUsage"]:
        """Build usage from a chat-completions ``usage`` block.

        Accepts either the SDK object or a plain dict. Returns None when the
        vendor reported no usage at all.
        """
        if not usage:
            return None
        if isinstance(usage, dict):
            prompt = usage.get("prompt_tokens")
            completion = usage.get("completion_tokens")
            total = usage.get("total_tokens")
        else:
            prompt = getattr(usage, "prompt_tokens", None)
            completion = getattr(usage, "completion_tokens", None)
            total = getattr(usage, "total_tokens", None)
        if not total and not prompt and not completion:
            return None
        return cls(input_tokens=int(prompt or 0), output_tokens=int(completion or 0))


# Base token usage per operation, used only to gate the balance before a call
ESTIMATED_ANALYSIS_USAGE = TokenUsage(input_tokens=1000, output_tokens=2000)
ESTIMATED_CHAT_USAGE = TokenUsage(input_tokens=500, output_tokens=1000)
