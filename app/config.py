from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_OFF_URL = "https://world.openfoodfacts.org"
DEFAULT_REVENUECAT_URL = "https://api.revenuecat.com/v1/subscribers"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field("sqlite:////tmp/quickcalories.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    openai_model: str = Field("gpt-4o-mini", alias="OPENAI_MODEL")
    openai_temperature: float = Field(0.3, alias="OPENAI_TEMPERATURE")
    openai_timeout_seconds: float = Field(30.0, alias="OPENAI_TIMEOUT_SECONDS")

    free_daily_limit: int = Field(5, alias="FREE_DAILY_LIMIT", ge=1)
    usage_store: str = Field(
        "memory",
        alias="USAGE_STORE",
        description="Backend for the per-device daily counter: memory or redis",
    )
    usage_timezone: str | None = Field(
        None,
        alias="USAGE_TIMEZONE",
        description="IANA zone for day boundaries; server local time when unset",
    )
    redis_url: str = Field("redis://localhost:6379", alias="REDIS_URL")

    supabase_jwt_secret: str | None = Field(None, alias="SUPABASE_JWT_SECRET")
    supabase_jwt_audience: str = Field("authenticated", alias="SUPABASE_JWT_AUDIENCE")

    stripe_secret_key: str | None = Field(None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = Field(None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_id: str | None = Field(None, alias="STRIPE_PRICE_ID")
    app_url: str = Field("http://localhost:3000", alias="APP_URL")

    revenuecat_secret_key: str | None = Field(None, alias="REVENUECAT_SECRET_KEY")
    revenuecat_api_url: str = Field(DEFAULT_REVENUECAT_URL, alias="REVENUECAT_API_URL")
    revenuecat_entitlement_id: str = Field("pro", alias="REVENUECAT_ENTITLEMENT_ID")

    off_api_url: str = Field(DEFAULT_OFF_URL, alias="OFF_API_URL")
    http_timeout_seconds: float = Field(10.0, alias="HTTP_TIMEOUT_SECONDS")

    cors_origins: list[str] = Field(default_factory=lambda: ["*"], alias="CORS_ORIGINS")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )
