from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    api_key: str = "test-api-key"
    jwt_secret: str = Field("test-jwt-secret", alias="JWT_SECRET")
    trusted_proxies: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "testclient"]
    )
    rate_limit_ip_per_min: int = Field(60, alias="RATE_LIMIT_IP_PER_MIN")
    rate_limit_user_per_min: int = Field(120, alias="RATE_LIMIT_USER_PER_MIN")

    database_url: str = Field("sqlite:////tmp/helpdesk_test.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    redis_url: str = Field("redis://localhost:6379", alias="REDIS_URL")

    free_chat_limit: int = Field(3, alias="FREE_CHAT_LIMIT")
    max_image_bytes: int = 5 * 1024 * 1024
    summary_model: str = Field("gpt-4o-mini", alias="SUMMARY_MODEL")
    summary_timeout_s: float = Field(10.0, alias="SUMMARY_TIMEOUT_S")

    s3_bucket: str = "helpdesk"
    s3_prefix: str = "chat-images"
    s3_endpoint: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_public_url: str | None = None

    app_base_url: str = Field("http://localhost:3000", alias="APP_BASE_URL")
    stripe_api_base: str = Field("https://api.stripe.com", alias="STRIPE_API_BASE")
    stripe_secret_key: str | None = Field(None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(
        "whsec_test", alias="STRIPE_WEBHOOK_SECRET"
    )
    stripe_webhook_tolerance_s: int = 300
    stripe_meter_event_name: str = Field(
        "help_session", alias="STRIPE_METER_EVENT_NAME"
    )
    stripe_price_plus_monthly: str = Field(
        "price_plus_monthly", alias="STRIPE_PRODUCT_PLUS_MONTHLY"
    )
    stripe_price_plus_yearly: str = Field(
        "price_plus_yearly", alias="STRIPE_PRODUCT_PLUS_YEARLY"
    )
    stripe_price_paygo: str = Field("price_paygo", alias="STRIPE_PRODUCT_PAYGO")
    stripe_price_priority_paygo: str = Field(
        "price_priority_paygo", alias="STRIPE_PRODUCT_PRIORITY_PAYGO"
    )

    twilio_api_base: str = Field("https://api.twilio.com", alias="TWILIO_API_BASE")
    twilio_account_sid: str | None = Field(None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = Field(None, alias="TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = Field(None, alias="TWILIO_PHONE_NUMBER")
    support_phone_number: str | None = Field(None, alias="SUPPORT_PHONE_NUMBER")

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )
