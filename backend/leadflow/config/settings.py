# /leadflow/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_atlas_uri: str
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = True

    # Redis
    redis_url: str = "redis://localhost:6379"

    # WhatsApp Cloud API
    whatsapp_access_token: str
    whatsapp_verify_token: str
    whatsapp_app_secret: str
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"

    # Security
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    api_key: str | None = None

    # Deployment
    environment: str = Field(default="production", env="ENVIRONMENT")
    workers: int = 4

    cors_allowed_origins: List[str] = Field(default=["http://localhost:5173"])
    allowed_hosts: str = Field(default="*", env="ALLOWED_HOSTS")

    # Observability
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    sentry_dsn: str | None = None
    sentry_environment: str = "production"
    alerting_webhook_url: str | None = None

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100

    # Flow engine
    flow_max_step_attempts: int = 3
    flow_retry_backoff_seconds: int = 30
    flow_max_steps_per_run: int = 50
    flow_lease_seconds: int = 120
    flow_scheduler_interval_seconds: int = 15
    flow_scheduler_batch_size: int = 50
    flow_queue_workers: int = 5
    flow_queue_reclaim_idle_seconds: int = 60
    flow_queue_max_deliveries: int = 5
    scheduler_timezone: str = "America/Sao_Paulo"
    default_transfer_message: str = "Você será atendido por um humano em breve."

    # Connector sessions
    session_connect_timeout_seconds: int = 120
    session_qr_timeout_seconds: int = 60

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept both a comma-separated string and a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("jwt_secret_key")
    @classmethod
    def key_length_must_be_sufficient(cls, v):
        if len(v) < 32:
            raise ValueError("JWT secret key must be at least 32 characters long")
        return v

    @field_validator("flow_max_step_attempts", "flow_max_steps_per_run", "flow_lease_seconds")
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("Flow engine limits must be positive")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if not settings_obj.whatsapp_verify_token:
            raise ValueError("WHATSAPP_VERIFY_TOKEN is required")

        if settings_obj.environment == "production":
            for var in ["mongo_atlas_uri", "whatsapp_access_token", "whatsapp_app_secret"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
