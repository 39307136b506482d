from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "Tenant Billing Service"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    SITE_URL: str = "http://localhost:3000"

    # Security
    CORS_ORIGINS: list[str] = ["*"]
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    RATE_LIMIT_ENABLED: bool = True

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 0

    # Stripe price ids (plan x interval x currency)
    STRIPE_PRICE_STARTER_MONTHLY_USD: Optional[str] = "starter_monthly_usd"
    STRIPE_PRICE_STARTER_YEARLY_USD: Optional[str] = "starter_yearly_usd"
    STRIPE_PRICE_PRO_MONTHLY_USD: Optional[str] = "pro_monthly_usd"
    STRIPE_PRICE_PRO_YEARLY_USD: Optional[str] = "pro_yearly_usd"
    STRIPE_PRICE_ENTERPRISE_MONTHLY_USD: Optional[str] = "enterprise_monthly_usd"
    STRIPE_PRICE_ENTERPRISE_YEARLY_USD: Optional[str] = "enterprise_yearly_usd"
    STRIPE_PRICE_STARTER_MONTHLY_TRY: Optional[str] = "starter_monthly_try"
    STRIPE_PRICE_STARTER_YEARLY_TRY: Optional[str] = "starter_yearly_try"
    STRIPE_PRICE_PRO_MONTHLY_TRY: Optional[str] = "pro_monthly_try"
    STRIPE_PRICE_PRO_YEARLY_TRY: Optional[str] = "pro_yearly_try"
    STRIPE_PRICE_ENTERPRISE_MONTHLY_TRY: Optional[str] = "enterprise_monthly_try"
    STRIPE_PRICE_ENTERPRISE_YEARLY_TRY: Optional[str] = "enterprise_yearly_try"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    def stripe_price_id(self, plan: str, interval: str, currency: str) -> Optional[str]:
        """Look up a configured price id, e.g. ("pro", "month", "try")."""
        cycle = "MONTHLY" if interval == "month" else "YEARLY"
        return getattr(self, f"STRIPE_PRICE_{plan.upper()}_{cycle}_{currency.upper()}", None)


@lru_cache()
def get_settings():
    return Settings()
