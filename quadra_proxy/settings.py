from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    port: int = 3001
    environment: str = "development"
    providers_config_path: str | None = None
    default_provider: str = "openrouter"
    provider_fallback_enabled: bool = True
    upstream_timeout_seconds: float = 60.0
    upstream_connect_timeout_seconds: float = 5.0
    upstream_max_tokens: int = 500
    upstream_max_attempts: int = 6
    app_referer: str = "http://localhost:5173"
    app_title: str = "Quadra Chatbox"
    rate_limit_window_ms: int = 60_000
    rate_limit_max: int = 100
    disable_rate_limit: bool = False
    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    payment_currency: str = "INR"
    payment_timeout_seconds: float = 15.0
    redis_url: str | None = None
    usage_audit_log_enabled: bool = True
    usage_audit_log_path: str = "logs/usage_events.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=(".env", ".env.server"),
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def rate_limit_enabled(self) -> bool:
        # Development deployments run without ingress throttling.
        return self.is_production and not self.disable_rate_limit

    @property
    def payment_gateway_is_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)


@lru_cache
def get_settings() -> Settings:
    return Settings()
