from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

# HS256 wants at least 32 bytes of key
DEV_JWT_SECRET = "dreamdiary-dev-jwt-secret-not-for-production"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    environment: str = Field("development", alias="ENVIRONMENT")

    jwt_secret: str = Field(DEV_JWT_SECRET, alias="JWT_SECRET")
    session_ttl_days: int = Field(7, alias="SESSION_TTL_DAYS")
    session_cookie_name: str = "session_token"
    admin_setup_secret: str | None = Field(None, alias="ADMIN_SETUP_SECRET")

    database_url: str = Field("sqlite:////tmp/dreamdiary_test.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    openai_model: str = Field("gpt-4.1", alias="OPENAI_MODEL")
    openai_timeout_s: float = Field(60.0, alias="OPENAI_TIMEOUT_S")

    stripe_secret_key: str | None = Field(None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = Field(None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_deep_monthly: str = Field("", alias="STRIPE_PRICE_DEEP_MONTHLY")
    stripe_price_deep_yearly: str = Field("", alias="STRIPE_PRICE_DEEP_YEARLY")
    # Payment Links carry no metadata; amounts in cents at or above this are yearly
    stripe_yearly_amount_threshold: int = Field(
        10000, alias="STRIPE_YEARLY_AMOUNT_THRESHOLD"
    )
    stripe_webhook_tolerance_s: int = Field(300, alias="STRIPE_WEBHOOK_TOLERANCE_S")

    paywall_enabled: bool = Field(True, alias="PAYWALL_ENABLED")
    free_analysis_limit: int = Field(20, alias="FREE_ANALYSIS_LIMIT")
    free_weekly_report_limit: int = Field(3, alias="FREE_WEEKLY_REPORT_LIMIT")
    deep_weekly_report_limit: int = Field(2, alias="DEEP_WEEKLY_REPORT_LIMIT")
    free_min_report_days: int = Field(5, alias="FREE_MIN_REPORT_DAYS")
    deep_min_report_days: int = Field(3, alias="DEEP_MIN_REPORT_DAYS")
    week_timezone: str = Field(
        "Asia/Hong_Kong",
        alias="WEEK_TIMEZONE",
        description="Time zone defining the Sunday-Saturday report week",
    )

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"
