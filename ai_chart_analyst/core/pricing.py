"""
Pricing calculations and rate management.

Converts vendor token usage into app tokens: per-model USD prices per 1K
tokens, then a fixed USD-to-app-token exchange rate.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Dict, Optional

from .token_counter import (
    ESTIMATED_ANALYSIS_USAGE,
    ESTIMATED_CHAT_USAGE,
    TokenUsage,
)

logger = logging.getLogger(__name__)

# 1 USD buys 667 app tokens; margin is built into the token packages
TOKENS_PER_DOLLAR = 667

DEFAULT_MODEL = "openai/gpt-4o-mini"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_price_per_1k: Decimal  # USD per 1K input tokens
    output_price_per_1k: Decimal  # USD per 1K output tokens


@dataclass(frozen=True)
class ModelInfo:
    """A model the user can pick for analysis or chat."""
    id: str
    name: str
    description: str
    premium: bool


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    default_model: str = DEFAULT_MODEL
    tokens_per_dollar: int = TOKENS_PER_DOLLAR

    def __post_init__(self):
        """Validate the table can always resolve a price."""
        if self.default_model not in self.prices:
            raise ValueError(f"Default model {self.default_model} has no pricing")
        if self.tokens_per_dollar <= 0:
            raise ValueError("tokens_per_dollar must be > 0")

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Unknown models are billed at the default model's rates rather than
        rejected.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or for the default model
        """
        pricing = self.prices.get(model)
        if pricing is None:
            logger.debug("No pricing for %s, using %s", model, self.default_model)
            return self.prices[self.default_model]
        return pricing

    def supports(self, model: str) -> bool:
        return model in self.prices


PRICING_TABLE = PricingTable({
    "openai/gpt-4o-mini": ModelPricing(
        input_price_per_1k=Decimal("0.005"),
        output_price_per_1k=Decimal("0.015")
    ),
    "google/gemini-2.0-flash-001": ModelPricing(
        input_price_per_1k=Decimal("0.0025"),
        output_price_per_1k=Decimal("0.0075")
    ),
    "anthropic/claude-3.7-sonnet": ModelPricing(
        input_price_per_1k=Decimal("0.008"),
        output_price_per_1k=Decimal("0.024")
    ),
    "qwen/qwen2.5-vl-72b-instruct:free": ModelPricing(
        input_price_per_1k=Decimal("0.002"),
        output_price_per_1k=Decimal("0.006")
    ),
    "google/gemini-2.0-pro-exp-02-05:free": ModelPricing(
        input_price_per_1k=Decimal("0.003"),
        output_price_per_1k=Decimal("0.009")
    ),
    "qwen/qwen-vl-plus:free": ModelPricing(
        input_price_per_1k=Decimal("0.002"),
        output_price_per_1k=Decimal("0.006")
    ),
    "deepseek/deepseek-chat:free": ModelPricing(
        input_price_per_1k=Decimal("0.002"),
        output_price_per_1k=Decimal("0.006")
    ),
})


AVAILABLE_MODELS = (
    ModelInfo("openai/gpt-4o-2024-11-20", "GPT-4o", "Fast and efficient analysis", True),
    ModelInfo("google/gemini-2.0-flash-001", "Gemini 2.0 Flash", "Rapid data processing capabilities", True),
    ModelInfo("anthropic/claude-3.7-sonnet", "Claude 3.7 Sonnet", "Advanced reasoning and analysis", True),
    ModelInfo("qwen/qwen2.5-vl-72b-instruct:free", "Qwen 2.5 VL-72B", "Advanced pattern recognition", False),
    ModelInfo("google/gemini-2.0-pro-exp-02-05:free", "Gemini 2.0 Pro", "Comprehensive market insights", False),
    ModelInfo("qwen/qwen-vl-plus:free", "Qwen VL Plus", "Enhanced visual and linguistic processing", False),
    ModelInfo("deepseek/deepseek-chat:free", "DeepSeek V3", "Advanced reasoning and analysis", False),
)


def get_model_costs(model: str, table: Optional[PricingTable] = None) -> ModelPricing:
    """Return the pricing used to bill ``model``, falling back to the default."""
    return (table or PRICING_TABLE).get_pricing(model)


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: Optional[PricingTable] = None
) -> int:
    """Calculate the app-token cost of a request with conservative rounding.

    Args:
        model: Model identifier (unknown models use the default pricing)
        input_tokens: Prompt tokens reported or estimated
        output_tokens: Completion tokens reported or estimated
        table: Pricing table, defaults to the built-in PRICING_TABLE

    Returns:
        App tokens to deduct, rounded UP to a whole token

    Raises:
        ValueError: If a token count is negative
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts cannot be negative")

    table = table or PRICING_TABLE
    pricing = table.get_pricing(model)

    input_cost = (Decimal(input_tokens) / Decimal("1000")) * pricing.input_price_per_1k
    output_cost = (Decimal(output_tokens) / Decimal("1000")) * pricing.output_price_per_1k
    cost_usd = input_cost + output_cost

    # Never undercharge: round the token amount UP
    app_tokens = (cost_usd * table.tokens_per_dollar).to_integral_value(rounding=ROUND_CEILING)

    logger.debug(
        "Cost for %s: in=%d out=%d usd=%s tokens=%s",
        model, input_tokens, output_tokens, cost_usd, app_tokens
    )
    return int(app_tokens)


def calculate_usage_cost(model: str, usage: TokenUsage, table: Optional[PricingTable] = None) -> int:
    """Shorthand for :func:`calculate_cost` over a TokenUsage."""
    return calculate_cost(model, usage.input_tokens, usage.output_tokens, table)


def calculate_token_cost(
    model: str,
    is_analysis: bool = False,
    table: Optional[PricingTable] = None,
    estimate: Optional[TokenUsage] = None
) -> int:
    """Estimate the cost of an operation before calling the vendor.

    Used only to gate whether the balance is sufficient; the charge itself
    is recomputed from actual usage afterwards.
    """
    if estimate is None:
        estimate = ESTIMATED_ANALYSIS_USAGE if is_analysis else ESTIMATED_CHAT_USAGE
    return calculate_usage_cost(model, estimate, table)


def calculate_token_value_in_usd(tokens: int, table: Optional[PricingTable] = None) -> Decimal:
    """USD value of an app-token amount."""
    return Decimal(tokens) / Decimal((table or PRICING_TABLE).tokens_per_dollar)


def calculate_tokens_from_usd(usd_amount, table: Optional[PricingTable] = None) -> int:
    """App tokens a dollar amount buys, rounded down."""
    tokens = Decimal(str(usd_amount)) * (table or PRICING_TABLE).tokens_per_dollar
    return int(tokens.to_integral_value(rounding=ROUND_FLOOR))
