from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taskgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth and access-control service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_cache_fallback_dev: bool = env_field(False, "ALLOW_CACHE_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and the in-memory cache fallback.",
    )
    cache_prefix: str = env_field(
        "app", "CACHE_PREFIX", description="Namespace prepended to every cache key"
    )
    cache_timeout_seconds: float = env_field(2.0, "CACHE_TIMEOUT_SECONDS")

    # Token signing; access and refresh tokens use distinct secrets
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("taskgate", "JWT_ISSUER")
    jwt_audience: str = env_field("taskgate-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(60 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    session_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_TTL_SECONDS")

    # Brute-force lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")

    # Memoization TTLs for derived authorization state
    permission_cache_ttl_seconds: int = env_field(300, "PERMISSION_CACHE_TTL_SECONDS")
    ownership_cache_ttl_seconds: int = env_field(300, "OWNERSHIP_CACHE_TTL_SECONDS")

    # Per-user endpoint ceilings enforced by the authorization pipeline
    endpoint_rate_limit_window_seconds: int = env_field(
        60, "ENDPOINT_RATE_LIMIT_WINDOW_SECONDS"
    )
    endpoint_rate_limit_default: int = env_field(50, "ENDPOINT_RATE_LIMIT_DEFAULT")

    # Per-client request guard in front of the unauthenticated auth routes
    request_rate_limit_max_requests: int = env_field(
        20, "REQUEST_RATE_LIMIT_MAX_REQUESTS"
    )
    request_rate_limit_window_ms: int = env_field(60_000, "REQUEST_RATE_LIMIT_WINDOW_MS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    log_level: str = env_field("INFO", "LOG_LEVEL")

    # Defaults go through validators too, so missing secrets are generated
    model_config = ConfigDict(extra="ignore", validate_default=True)

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", field=info.field_name, length=len(value))
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            field=info.field_name,
            message="No signing secret configured; generated an ephemeral one for this process",
        )
        return secrets.token_urlsafe(64)

    @field_validator(
        "max_login_attempts",
        "lockout_duration_seconds",
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "session_ttl_seconds",
        "endpoint_rate_limit_window_seconds",
        "request_rate_limit_window_ms",
    )
    @classmethod
    def _require_positive(cls, value: int, info) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @model_validator(mode="after")
    def _require_distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


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
