from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bastion.logging import get_logger
from bastion.service.errors import ConfigError

logger = get_logger(__name__)

# Minimum signing secret length accepted for HS256
MIN_JWT_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup."""

    app_name: str = env_field("Bastion", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/bastion", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for memory-store snapshots; unset keeps state in process only",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks for sessions when Redis is absent",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    access_token_ttl_seconds: int = env_field(
        900, "JWT_ACCESS_EXP", description="Access token lifetime in seconds"
    )
    refresh_token_ttl_seconds: int = env_field(
        604800, "JWT_REFRESH_EXP", description="Refresh token lifetime in seconds"
    )
    secure_cookies: bool = env_field(
        False,
        "SECURE_COOKIES",
        description="Mark auth cookies Secure and send HSTS",
    )
    csrf_enabled: bool = env_field(True, "CSRF_ENABLED")
    session_ttl_seconds: int = env_field(2 * 60 * 60, "SESSION_TTL_SECONDS")
    api_prefix: str = env_field(
        "/api",
        "API_PREFIX",
        description="Paths under this prefix use bearer/token auth and skip CSRF",
    )
    admin_path_prefixes: list[str] = env_field(
        ["/admin", "/api/admin"], "ADMIN_PATH_PREFIXES"
    )
    login_path: str = env_field("/login", "LOGIN_PATH")
    login_redirect_path: str = env_field("/profile", "LOGIN_REDIRECT_PATH")
    refresh_sweep_interval_seconds: int = env_field(
        3600, "REFRESH_SWEEP_INTERVAL_SECONDS"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("admin_path_prefixes", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("admin_path_prefixes")
    @classmethod
    def _normalize_prefixes(cls, value: list[str]) -> list[str]:
        return ["/" + prefix.strip("/") for prefix in value]

    @field_validator("api_prefix")
    @classmethod
    def _normalize_api_prefix(cls, value: str) -> str:
        return "/" + value.strip("/")

    @field_validator("access_token_ttl_seconds", "refresh_token_ttl_seconds", "session_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token and session lifetimes must be positive")
        return value

    def require_jwt_secret(self) -> str:
        """Return the signing secret or stop startup when it is missing."""

        secret = (self.jwt_secret or "").strip()
        if not secret:
            logger.error("jwt_secret_missing")
            raise ConfigError("JWT_SECRET not configured")
        if len(secret) < MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_secret_too_short", length=len(secret))
            raise ConfigError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return secret


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
