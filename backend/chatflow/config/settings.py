# /chatflow/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_atlas_uri: str = "mongodb://localhost:27017/chatflow"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis
    redis_url: str = "redis://localhost:6379"
    redis_ssl: bool = False

    # Transport (Telegram Bot API)
    telegram_bot_token: str | None = None
    telegram_api_base_url: str = "https://api.telegram.org"
    transport_timeout_seconds: float = 15.0

    # Engine limits
    max_steps: int = 500
    handler_retry_attempts: int = 3
    handler_retry_backoff_seconds: float = 1.0
    handler_retry_backoff_max_seconds: float = 10.0
    recovery_max_attempts: int = 3
    recovery_window_seconds: int = 3600
    default_wait_timeout_seconds: int | None = None
    max_delay_seconds: int = 24 * 60 * 60
    # Pauses inside button actions run in-process, so they stay short
    max_button_action_delay_seconds: float = 5.0
    wait_sweep_interval_seconds: int = 30
    api_request_timeout_seconds: float = 10.0

    # Inbound event queue
    queue_enabled: bool = True
    queue_workers: int = 5
    event_dedupe_ttl_seconds: int = 300

    # Storage backend: "mongo" in deployments, "memory" for local runs and tests
    execution_store: str = "mongo"

    # Deployment
    workers: int = 4
    environment: str = Field(default="production")
    cors_allowed_origins: List[str] = Field(default_factory=list)

    # Observability
    alerting_webhook_url: str | None = None

    # App Metadata
    api_version: str = "v1"

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept both a comma-separated string and a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("environment", "execution_store")
    @classmethod
    def lowercase(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("max_steps", "handler_retry_attempts", "recovery_max_attempts")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Engine limits must be at least 1")
        return v

    @model_validator(mode="after")
    def check_store_backend(self):
        if self.execution_store not in ("mongo", "memory"):
            raise ValueError("EXECUTION_STORE must be either 'mongo' or 'memory'")
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            if not settings_obj.telegram_bot_token:
                raise ValueError("TELEGRAM_BOT_TOKEN is required in production")
            if settings_obj.execution_store != "mongo":
                raise ValueError("EXECUTION_STORE must be 'mongo' in production")
        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
