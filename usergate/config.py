from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from usergate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/usergate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: ephemeral JWT secret, in-memory cache fallback.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("usergate", "JWT_ISSUER")
    session_ttl_hours: int = env_field(
        23,
        "SESSION_TTL_HOURS",
        description="Lifetime of a login session and of the bearer token it is keyed by",
    )
    verification_token_ttl_minutes: int = env_field(
        60, "VERIFICATION_TOKEN_TTL_MINUTES"
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    default_role: str = env_field("Customer", "DEFAULT_ROLE")
    url_verify_account: str = env_field(
        "http://localhost:8080/verify", "URL_VERIFY_ACCOUNT"
    )
    url_forgot_password: str = env_field("http://localhost:8080", "URL_FORGOT_PASSWORD")
    notification_queue_prefix: str = env_field("notify:", "NOTIFICATION_QUEUE_PREFIX")
    notification_required: bool = env_field(
        False,
        "NOTIFICATION_REQUIRED",
        description="Fail sign-up and forgot-password when the notification cannot be enqueued",
    )
    operation_timeout_seconds: float = env_field(5.0, "OPERATION_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator(
        "session_ttl_hours", "verification_token_ttl_minutes", "reset_token_ttl_minutes"
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token and session lifetimes must be positive")
        return value

    @field_validator("operation_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("operation timeout must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Ephemeral secret; tokens do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_ephemeral", test_mode=True)
        return self

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_hours * 3600


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
