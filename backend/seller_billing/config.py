"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, BillingConfig) are env-overridable via
the double-underscore delimiter, e.g.:
    STRIPE__SECRET_KEY=sk_live_...
    STRIPE__CATALOG_IDS_JSON='{"PRO": {"monthly": "price_123"}}'
    BILLING__PUBLIC_ORIGIN=https://solerz.com
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseModel):
    """Stripe API access and catalog configuration."""

    secret_key: str = ""
    webhook_secret: str = ""
    api_base: str = "https://api.stripe.com"
    currency: str = "myr"
    # JSON map of tier -> cycle -> price_/prod_ id, overrides the built-in table
    catalog_ids_json: str = ""
    product_name_prefix: str = "Solerz"
    request_timeout_seconds: float = 10.0
    # Max distance between the signature timestamp and now
    webhook_tolerance_seconds: int = 300


class BillingConfig(BaseModel):
    """Billing flow behaviour."""

    # Empty means "use the origin of the incoming request"
    public_origin: str = ""
    success_path: str = "/dashboard?payment=success&session_id={CHECKOUT_SESSION_ID}"
    cancel_path: str = "/pricing?payment=canceled"
    default_portal_return_path: str = "/dashboard"
    enforce_listing_limits: bool = True


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""
    supabase_service_role_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173", "https://solerz.com"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
