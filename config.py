"""
Centralized configuration using Pydantic BaseSettings.
All environment variables are optional to prevent application startup failure.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Normalized plan types
PLAN_FREELANCE = "freelance"
PLAN_AGENCY = "agency"
PLAN_ENTERPRISE = "enterprise"
PLAN_DEALCLOSER = "dealcloser"

PLAN_TYPES = (PLAN_FREELANCE, PLAN_AGENCY, PLAN_ENTERPRISE, PLAN_DEALCLOSER)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,  # Allow both field name and alias
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./proposalkraft.db", alias="DATABASE_URL")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_id_freelance: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ID_FREELANCE")
    stripe_price_id_agency: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ID_AGENCY")
    stripe_price_id_enterprise: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ID_ENTERPRISE")

    # PayPal plan configuration (webhooks are trusted by network topology)
    paypal_plan_id_freelance: Optional[str] = Field(default=None, alias="PAYPAL_PLAN_ID_FREELANCE")
    paypal_plan_id_agency: Optional[str] = Field(default=None, alias="PAYPAL_PLAN_ID_AGENCY")
    paypal_plan_id_enterprise: Optional[str] = Field(default=None, alias="PAYPAL_PLAN_ID_ENTERPRISE")

    # Whop configuration
    whop_api_key: Optional[str] = Field(default=None, alias="WHOP_API_KEY")
    whop_company_id: Optional[str] = Field(default=None, alias="WHOP_COMPANY_ID")
    whop_api_base: str = Field(default="https://api.whop.com/api/v2", alias="WHOP_API_BASE")
    whop_plan_id_dealcloser: Optional[str] = Field(default=None, alias="WHOP_PLAN_ID_DEALCLOSER")
    whop_plan_id_freelance: Optional[str] = Field(default=None, alias="WHOP_PLAN_ID_FREELANCE")
    whop_plan_id_agency: Optional[str] = Field(default=None, alias="WHOP_PLAN_ID_AGENCY")
    whop_plan_id_enterprise: Optional[str] = Field(default=None, alias="WHOP_PLAN_ID_ENTERPRISE")

    # Subscription bookkeeping
    provider_timeout_seconds: float = Field(default=10.0, alias="PROVIDER_TIMEOUT_SECONDS")
    subscription_fallback_days: int = Field(default=30, alias="SUBSCRIPTION_FALLBACK_DAYS")
    one_time_access_days: int = Field(default=365, alias="ONE_TIME_ACCESS_DAYS")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    def paypal_plan_ids(self) -> dict:
        return {
            PLAN_FREELANCE: self.paypal_plan_id_freelance,
            PLAN_AGENCY: self.paypal_plan_id_agency,
            PLAN_ENTERPRISE: self.paypal_plan_id_enterprise,
        }

    def whop_plan_ids(self) -> dict:
        return {
            PLAN_DEALCLOSER: self.whop_plan_id_dealcloser,
            PLAN_FREELANCE: self.whop_plan_id_freelance,
            PLAN_AGENCY: self.whop_plan_id_agency,
            PLAN_ENTERPRISE: self.whop_plan_id_enterprise,
        }

    def stripe_price_ids(self) -> dict:
        return {
            PLAN_FREELANCE: self.stripe_price_id_freelance,
            PLAN_AGENCY: self.stripe_price_id_agency,
            PLAN_ENTERPRISE: self.stripe_price_id_enterprise,
        }


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
