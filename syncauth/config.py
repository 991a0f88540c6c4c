from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from syncauth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    db_pool_min_size: int = env_field(0, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(20, "DB_POOL_MAX_SIZE", ge=1)
    db_pool_idle_timeout_seconds: float = env_field(
        30.0,
        "DB_POOL_IDLE_TIMEOUT_SECONDS",
        description="Idle connections are closed after this many seconds",
    )
    db_pool_acquire_timeout_seconds: float = env_field(
        2.0,
        "DB_POOL_ACQUIRE_TIMEOUT_SECONDS",
        description="Max wait for a pooled connection before failing with 503",
    )
    db_connect_timeout_seconds: float = env_field(
        5.0,
        "DB_CONNECT_TIMEOUT_SECONDS",
        description="Startup probe budget for the durable store",
    )
    use_file_store: bool = env_field(
        False,
        "USE_FILE_STORE",
        description="Skip the durable store and run on the local users file",
    )
    users_file: str = env_field("./data/users.json", "USERS_FILE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("automerge-sync-server", "JWT_ISSUER")
    jwt_audience: str = env_field("automerge-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    default_admin_username: str = env_field("admin", "DEFAULT_ADMIN_USERNAME")
    default_admin_password: str = env_field("admin123", "DEFAULT_ADMIN_PASSWORD")
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH", ge=1)
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS", gt=0)
    cleanup_interval_seconds: int = env_field(
        3600,
        "CLEANUP_INTERVAL_SECONDS",
        description="Period of the background expired-token sweep; 0 disables it",
    )

    require_ws_auth: bool = env_field(False, "REQUIRE_WS_AUTH")
    debug_errors: bool = env_field(
        False,
        "DEBUG_ERRORS",
        description="Return sanitized backend error text to clients; never enable in production",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("database_url")
    @classmethod
    def _blank_database_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_SECRET_LENGTH and not self.test_mode:
                logger.warning(
                    "jwt_secret_short",
                    length=len(self.jwt_secret),
                    minimum=_MIN_SECRET_LENGTH,
                )
            return self
        # Ephemeral secret: every restart invalidates all issued tokens
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning(
            "jwt_secret_generated",
            message=(
                "JWT_SECRET is not set; using a random per-process secret. "
                "All tokens become invalid on restart. Set JWT_SECRET in production."
            ),
        )
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
