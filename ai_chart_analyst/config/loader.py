"""
Configuration management and loading.

Loads the optional YAML application config: pricing overrides, pre-flight
estimates, vendor retry policy and chat limits.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.guardrails import Feature
from ..core.pricing import DEFAULT_MODEL, PRICING_TABLE, TOKENS_PER_DOLLAR, ModelPricing, PricingTable
from ..core.token_counter import ESTIMATED_ANALYSIS_USAGE, ESTIMATED_CHAT_USAGE, TokenUsage


@dataclass(frozen=True)
class VendorConfig:
    """Retry and timeout policy for vendor calls."""
    timeout: float = 60.0
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 5.0

    def __post_init__(self):
        """Validate retry values."""
        if self.timeout <= 0:
            raise ValueError("vendor.timeout must be > 0")
        if self.max_retries < 0:
            raise ValueError("vendor.max_retries cannot be negative")
        if self.initial_delay < 0 or self.max_delay < self.initial_delay:
            raise ValueError("vendor delays must satisfy 0 <= initial_delay <= max_delay")


@dataclass(frozen=True)
class ChatConfig:
    session_max_age_hours: float = 24
    min_message_interval_ms: int = 500

    def __post_init__(self):
        if self.session_max_age_hours <= 0:
            raise ValueError("chat.session_max_age_hours must be > 0")
        if self.min_message_interval_ms < 0:
            raise ValueError("chat.min_message_interval_ms cannot be negative")

    @property
    def session_max_age_ms(self) -> int:
        return int(self.session_max_age_hours * 60 * 60 * 1000)


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    prices: Dict[str, ModelPricing] = field(default_factory=dict)
    default_model: str = DEFAULT_MODEL
    tokens_per_dollar: int = TOKENS_PER_DOLLAR
    estimates: Dict[Feature, TokenUsage] = field(default_factory=dict)
    vendor: VendorConfig = field(default_factory=VendorConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)

    def pricing_table(self) -> PricingTable:
        """Built-in prices overlaid with the configured ones."""
        if not self.prices and self.default_model == DEFAULT_MODEL and self.tokens_per_dollar == TOKENS_PER_DOLLAR:
            return PRICING_TABLE
        prices = dict(PRICING_TABLE.prices)
        prices.update(self.prices)
        return PricingTable(prices, self.default_model, self.tokens_per_dollar)

    def estimate_for(self, feature: Feature) -> TokenUsage:
        """Pre-flight usage estimate; EA generation uses the analysis estimate by default."""
        if feature in self.estimates:
            return self.estimates[feature]
        if feature == Feature.CHAT:
            return ESTIMATED_CHAT_USAGE
        return self.estimates.get(Feature.ANALYSIS, ESTIMATED_ANALYSIS_USAGE)


def _check_keys(data: Any, allowed: set, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return data


def _positive_number(value: Any, path: str, allow_zero: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{path}' must be > 0")
    return value


def load_app_config(path: str) -> AppConfig:
    """Load and validate the application configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to mispriced operations.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    _check_keys(raw_config, {'pricing', 'estimates', 'vendor', 'chat'}, "config")

    kwargs: Dict[str, Any] = {}
    if 'pricing' in raw_config:
        kwargs.update(_parse_pricing(raw_config['pricing']))
    if 'estimates' in raw_config:
        kwargs['estimates'] = _parse_estimates(raw_config['estimates'])
    if 'vendor' in raw_config:
        vendor = _check_keys(
            raw_config['vendor'], {'timeout', 'max_retries', 'initial_delay', 'max_delay'}, "vendor"
        )
        if 'max_retries' in vendor and not isinstance(vendor['max_retries'], int):
            raise ValueError("'vendor.max_retries' must be an integer")
        kwargs['vendor'] = VendorConfig(**vendor)
    if 'chat' in raw_config:
        chat = _check_keys(
            raw_config['chat'], {'session_max_age_hours', 'min_message_interval_ms'}, "chat"
        )
        kwargs['chat'] = ChatConfig(**chat)

    config = AppConfig(**kwargs)
    # Fail at load time rather than on the first priced request
    config.pricing_table()
    return config


def _parse_pricing(data: Any) -> Dict[str, Any]:
    """Parse and validate the pricing section.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, {'default_model', 'tokens_per_dollar', 'models'}, "pricing")
    result: Dict[str, Any] = {}

    if 'default_model' in data:
        if not isinstance(data['default_model'], str) or not data['default_model']:
            raise ValueError("'pricing.default_model' must be a non-empty string")
        result['default_model'] = data['default_model']

    if 'tokens_per_dollar' in data:
        tokens_per_dollar = data['tokens_per_dollar']
        if isinstance(tokens_per_dollar, bool) or not isinstance(tokens_per_dollar, int) or tokens_per_dollar <= 0:
            raise ValueError("'pricing.tokens_per_dollar' must be a positive integer")
        result['tokens_per_dollar'] = tokens_per_dollar

    prices = {}
    models = data.get('models') or {}
    if not isinstance(models, dict):
        raise ValueError("'pricing.models' must be a dictionary")
    for model_id, model_data in models.items():
        model_path = f"pricing.models.{model_id}"
        _check_keys(model_data, {'input_price_per_1k', 'output_price_per_1k'}, model_path)
        values = {}
        for key in ('input_price_per_1k', 'output_price_per_1k'):
            if key not in model_data:
                raise ValueError(f"Missing required '{key}' in {model_path}")
            _positive_number(model_data[key], f"{model_path}.{key}", allow_zero=True)
            try:
                values[key] = Decimal(str(model_data[key]))
            except InvalidOperation:
                raise ValueError(f"'{model_path}.{key}' is not a valid price")
        prices[model_id] = ModelPricing(**values)
    result['prices'] = prices
    return result


def _parse_estimates(data: Any) -> Dict[Feature, TokenUsage]:
    allowed = {feature.value for feature in Feature}
    _check_keys(data, allowed, "estimates")
    estimates = {}
    for name, usage in data.items():
        path = f"estimates.{name}"
        _check_keys(usage, {'input_tokens', 'output_tokens'}, path)
        for key in ('input_tokens', 'output_tokens'):
            if key not in usage:
                raise ValueError(f"Missing required '{key}' in {path}")
            if isinstance(usage[key], bool) or not isinstance(usage[key], int) or usage[key] < 0:
                raise ValueError(f"'{path}.{key}' must be a non-negative integer")
        estimates[Feature(name)] = TokenUsage(usage['input_tokens'], usage['output_tokens'])
    return estimates
