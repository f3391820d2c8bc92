"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, BillingConfig) are env-overridable via the
double-underscore delimiter, e.g.:
    STRIPE__WEBHOOK_SECRET=whsec_...
    BILLING__GRACE_PERIOD_DAYS=7
    BILLING__ADMIN_USER_IDS='["uid-1"]'
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from editais.models.entitlements import Tier


class StripeConfig(BaseModel):
    """Stripe credentials and price catalog."""

    secret_key: str = ""
    webhook_secret: str = ""
    price_role: str = ""
    price_document: str = ""
    price_unlimited: str = ""
    checkout_success_url: str = "http://localhost:3000/checkout/success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "http://localhost:3000/checkout/cancel"


class BillingConfig(BaseModel):
    """Entitlement lifecycle policy."""

    # Refund and scope-change window, counted from the grant start date
    grace_period_days: int = 7
    trial_duration_days: int = 7
    paid_plan_duration_days: int = 365
    # Tiers sold as Stripe subscriptions; everything else is a one-off payment
    recurring_tiers: list[Tier] = Field(default_factory=lambda: [Tier.UNLIMITED])
    # When enabled, approving a refund also issues it through Stripe
    issue_provider_refunds: bool = False
    admin_user_ids: list[str] = Field(default_factory=list)
    store_max_conflict_retries: int = 3


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
    supabase_secret_key: str = ""
    entitlements_table: str = "entitlements"
    subscription_owners_table: str = "subscription_owners"
    admins_table: str = "admins"

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
