from __future__ import annotations

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Pick up a local .env in dev; real environment variables always win.
load_dotenv(override=False)

DEFAULT_ALLOWED_ORIGINS = ["http://localhost:3000"]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name}={raw!r}, expected an integer") from exc


def _env_origins() -> list[str]:
    raw = os.getenv("ALLOWED_ORIGINS")
    if not raw:
        return list(DEFAULT_ALLOWED_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


class Settings(BaseModel):
    # --- HTTP server ---
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: _env_int("PORT", 3000))

    # "development" exposes exception text in 500 responses
    environment: str = Field(default_factory=lambda: os.getenv("APP_ENV", "production"))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    # --- Twilio settings for outbound SMS ---
    twilio_account_sid: str | None = Field(default_factory=lambda: os.getenv("TWILIO_ACCOUNT_SID"))
    twilio_auth_token: str | None = Field(default_factory=lambda: os.getenv("TWILIO_AUTH_TOKEN"))
    twilio_from_number: str | None = Field(default_factory=lambda: os.getenv("TWILIO_FROM_NUMBER"))

    # Public URL of this service, used to build delivery status callbacks.
    base_url: str | None = Field(default_factory=lambda: os.getenv("BASE_URL"))

    # --- Request gate ---
    allowed_origins: list[str] = Field(default_factory=_env_origins)
    client_api_key: str | None = Field(default_factory=lambda: os.getenv("CLIENT_API_KEY"))

    rate_limit_window_seconds: int = Field(
        default_factory=lambda: _env_int("RATE_LIMIT_WINDOW_SECONDS", 15 * 60)
    )
    rate_limit_max: int = Field(default_factory=lambda: _env_int("RATE_LIMIT_MAX", 100))
    sms_rate_limit_window_seconds: int = Field(
        default_factory=lambda: _env_int("SMS_RATE_LIMIT_WINDOW_SECONDS", 60 * 60)
    )
    sms_rate_limit_max: int = Field(default_factory=lambda: _env_int("SMS_RATE_LIMIT_MAX", 10))

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    def status_callback_url(self, message_id: str) -> str | None:
        """Webhook URL Twilio should report delivery updates to, if we know our own URL."""
        if not self.base_url:
            return None
        return f"{self.base_url.rstrip('/')}/v1/emergency/sms-webhook/{message_id}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
