"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    api_base_url: str
    nonce: str = ""
    nonce_refresh_url: str | None = None
    offerings_url: str = ""
    request_timeout_seconds: float = 15.0
    poll_max_attempts: int = 60
    poll_interval_seconds: float = 5.0
    poll_deadline_seconds: float | None = None
    snapshot_ttl_seconds: int = 86400
    max_free_unlocks: int = 2
    loop_guard_window_ms: int = 500
    loop_guard_max_loads: int = 5
    loading_message_interval_seconds: float = 3.0
    otp_wait_seconds: float = 3.0
    response_wait_seconds: float = 2.0
    reading_type: str = "aura_teaser"
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    log_level: str = "INFO"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_prefix="FUNNEL_",
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )

