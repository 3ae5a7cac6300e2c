"""
Environment settings.

Secrets and deployment values come from the environment, optionally seeded
from a ``.env`` file. Missing values only fail when a feature needs them.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from ..storage.blobs import DEFAULT_BLOB_DIR
from ..storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class TokenPackage:
    tokens: int
    price_env: str  # environment variable holding the Stripe price id
    price_usd: Optional[int] = None


TOKEN_PACKAGES = (
    TokenPackage(7000, "STRIPE_PRICE_7000_TOKENS", 10),
    TokenPackage(40000, "STRIPE_PRICE_40000_TOKENS", 50),
    TokenPackage(100000, "STRIPE_PRICE_100000_TOKENS", 100),
    # Legacy packages, still honored for old checkouts
    TokenPackage(10, "STRIPE_PRICE_10_TOKENS"),
    TokenPackage(50, "STRIPE_PRICE_50_TOKENS"),
    TokenPackage(100, "STRIPE_PRICE_100_TOKENS"),
)

PRICE_ENV_TOKENS = {package.price_env: package.tokens for package in TOKEN_PACKAGES}


class ConfigurationError(Exception):
    """Raised when a required setting is missing."""
    def __init__(self, variable: str, purpose: str = ""):
        self.variable = variable
        message = f"{variable} is required"
        if purpose:
            message += f" for {purpose}"
        super().__init__(message + ". Please check your .env file.")


@dataclass(frozen=True)
class Settings:
    openrouter_api_key: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    site_url: Optional[str] = None
    app_title: str = "AI Market Analyst"
    db_path: str = DEFAULT_DB_PATH
    blob_dir: str = DEFAULT_BLOB_DIR
    price_tokens: Dict[str, int] = field(default_factory=dict)

    def require_openrouter_api_key(self) -> str:
        if not self.openrouter_api_key:
            raise ConfigurationError("OPENROUTER_API_KEY", "chart analysis")
        return self.openrouter_api_key

    def require_stripe_secret_key(self) -> str:
        if not self.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY", "payments")
        return self.stripe_secret_key

    def require_webhook_secret(self) -> str:
        if not self.stripe_webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET", "payment webhooks")
        return self.stripe_webhook_secret

    def require_site_url(self) -> str:
        if not self.site_url:
            raise ConfigurationError("URL", "checkout redirects")
        return self.site_url.rstrip("/")

    @property
    def valid_price_ids(self):
        return set(self.price_tokens)


def load_settings(env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings from the environment.

    Args:
        env_file: Optional .env file; the default lookup is used when None
        environ: Mapping to read instead of os.environ (no .env loading)

    Returns:
        Settings; missing secrets are left as None
    """
    if environ is None:
        load_dotenv(env_file)
        environ = os.environ

    price_tokens = {}
    for variable, tokens in PRICE_ENV_TOKENS.items():
        price_id = environ.get(variable)
        if price_id:
            price_tokens[price_id] = tokens

    return Settings(
        openrouter_api_key=environ.get("OPENROUTER_API_KEY") or None,
        stripe_secret_key=environ.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=environ.get("STRIPE_WEBHOOK_SECRET") or None,
        site_url=environ.get("URL") or None,
        app_title=environ.get("CHART_ANALYST_APP_TITLE") or "AI Market Analyst",
        db_path=environ.get("CHART_ANALYST_DB") or DEFAULT_DB_PATH,
        blob_dir=environ.get("CHART_ANALYST_BLOB_DIR") or DEFAULT_BLOB_DIR,
        price_tokens=price_tokens
    )
