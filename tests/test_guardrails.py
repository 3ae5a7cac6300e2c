"""
Unit tests for the pre-flight balance guardrail and timeframe formatting.
"""

import pytest

from ai_chart_analyst.core.formatters import format_timeframe, to_platform_timeframe
from ai_chart_analyst.core.guardrails import Feature, InsufficientTokens, check_token_balance


class TestCheckTokenBalance:
    """Test balance checks before billable operations."""

    def test_allowed_when_balance_covers(self):
        """Verify an exact balance is enough."""
        result = check_token_balance(24, 24, Feature.ANALYSIS)
        assert result.allowed
        assert result.raise_if_insufficient() is result

    def test_blocked_when_balance_short(self):
        """Verify a short balance is blocked with the feature message."""
        result = check_token_balance(23, 24, Feature.ANALYSIS)
        assert not result.allowed
        with pytest.raises(InsufficientTokens) as exc_info:
            result.raise_if_insufficient()
        assert str(exc_info.value) == "Insufficient tokens. You need 24 tokens to analyze a chart."
        assert exc_info.value.available == 23

    @pytest.mark.parametrize("feature,action", [
        (Feature.CHAT, "continue the chat"),
        (Feature.EA_GENERATOR, "generate an EA"),
    ])
    def test_feature_messages(self, feature, action):
        """Verify each feature names its action."""
        error = InsufficientTokens(12, 0, feature)
        assert str(error) == f"Insufficient tokens. You need 12 tokens to {action}."

    def test_negative_requirement_rejected(self):
        """Verify a negative estimate is a programming error."""
        with pytest.raises(ValueError):
            check_token_balance(10, -1, Feature.CHAT)

    def test_feature_values(self):
        """Verify stored feature names."""
        assert [f.value for f in Feature] == ["chat", "analysis", "ea-generator"]


class TestTimeframes:
    """Test timeframe notation conversion."""

    @pytest.mark.parametrize("platform,display", [
        ("M15", "15m"),
        ("H1", "1h"),
        ("H4", "4h"),
        ("D1", "1D"),
        ("W1", "1W"),
        ("MN1", "1M"),
    ])
    def test_platform_to_display(self, platform, display):
        """Verify platform labels become display labels."""
        assert format_timeframe(platform) == display

    @pytest.mark.parametrize("display,platform", [
        ("15m", "M15"),
        ("4h", "H4"),
        ("1D", "D1"),
        ("1M", "MN1"),
    ])
    def test_display_to_platform(self, display, platform):
        """Verify display labels become platform labels."""
        assert to_platform_timeframe(display) == platform

    def test_unrecognized_passthrough(self):
        """Verify unknown notations are returned unchanged."""
        assert format_timeframe("Daily") == "Daily"
        assert to_platform_timeframe("weekly") == "weekly"

    def test_empty(self):
        """Verify empty input yields an empty string."""
        assert format_timeframe(None) == ""
        assert format_timeframe("") == ""
        assert to_platform_timeframe(None) == ""
