"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting has the wrong type, the app fails fast with a
clear error message.

Usage:
    from marketplace_escrow.config import get_settings
    settings = get_settings()
    print(settings.escrow_hold_days)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the marketplace escrow engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:3000"

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://marketplace:marketplace_dev"
        "@localhost:5432/marketplace_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_webhook_dedupe_ttl_seconds: int = 86400  # 24 hours

    # --- Payment processor (Stripe) ---
    # Leave stripe_secret_key empty to run against the simulated gateway.
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = "usd"

    # --- Fees & Escrow ---
    platform_fee_percentage: Decimal = Field(default=Decimal("5.0"), ge=0, lt=100)
    escrow_hold_days: int = Field(default=7, ge=0)

    # --- Offers ---
    offer_default_expiry_days: int = 7
    offer_min_expiry_days: int = 1
    offer_max_expiry_days: int = 30
    offer_extension_min_days: int = 1
    offer_extension_max_days: int = 14

    # --- Notifications & Email ---
    email_api_key: str = ""
    email_api_url: str = "https://api.resend.com/emails"
    email_from: str = "Marketplace <noreply@example.com>"
    side_effect_timeout_seconds: float = 5.0

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def payments_simulated(self) -> bool:
        """True when no Stripe key is configured (in-memory gateway)."""
        return not self.stripe_secret_key

    @property
    def email_simulated(self) -> bool:
        return not self.email_api_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
