"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (LedgerConfig, StripeConfig, SupabaseTables) are
env-overridable via the double-underscore delimiter, e.g.:
    LEDGER__BASE_ALLOWANCE=50
    LEDGER__CONSUME_MAX_RETRIES=5
    STRIPE__WEBHOOK_SECRET=whsec_...
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PurchasePlan(BaseModel):
    """A one-time credit pack offered in the catalog."""

    places: int = Field(gt=0)
    credit_type: str
    label: str
    # Display prices per currency (JPY in yen, others in whole units)
    prices: dict[str, int] = Field(default_factory=dict)


def _default_purchase_plans() -> dict[str, PurchasePlan]:
    return {
        "small_pack": PurchasePlan(
            places=10,
            credit_type="one_time_small",
            label="Small pack",
            prices={"JPY": 110, "USD": 1, "EUR": 1},
        ),
        "regular_pack": PurchasePlan(
            places=50,
            credit_type="one_time_regular",
            label="Regular pack",
            prices={"JPY": 440, "USD": 4, "EUR": 4},
        ),
    }


class LedgerConfig(BaseModel):
    """Quota rules shared by the calculator, consumer, ingester and gate."""

    base_allowance: int = Field(default=30, ge=0)
    purchase_plans: dict[str, PurchasePlan] = Field(default_factory=_default_purchase_plans)
    # Bounded retry for transient store failures while reserving a unit
    consume_max_retries: int = Field(default=3, ge=1)
    consume_retry_base_delay_seconds: float = 0.05

    def plan_for(self, plan_type: str) -> PurchasePlan | None:
        return self.purchase_plans.get(plan_type)


class StripeConfig(BaseModel):
    """Stripe credentials used for webhook verification and lookups."""

    secret_key: str = ""
    webhook_secret: str = ""


class SupabaseTables(BaseModel):
    """Table and RPC names in the Supabase project."""

    credits: str = "place_credits"
    subscriptions: str = "subscriptions"
    usage: str = "user_place_usage"
    places: str = "list_places"
    consume_rpc: str = "consume_place_credit"
    release_rpc: str = "release_place_credit"


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
    supabase_secret_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    tables: SupabaseTables = Field(default_factory=SupabaseTables)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
