from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantguard.logging import get_logger
from tenantguard.service.tokens import GENERATE_KEY, KeyPair

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional ``.env`` file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-process cache and sync Redis client paths for tests",
    )
    access_token_key: str = env_field(
        GENERATE_KEY,
        "ACCESS_TOKEN",
        description="Base64 PEM RSA private key for access credentials, or 'new'",
    )
    refresh_token_key: str = env_field(
        GENERATE_KEY,
        "REFRESH_TOKEN",
        description="Base64 PEM RSA private key for refresh credentials, or 'new'",
    )
    access_token_expire_minutes: int = env_field(15, "ACCESS_TOKEN_EXPIRE_MINUTES")
    refresh_token_expire_minutes: int = env_field(60, "REFRESH_TOKEN_EXPIRE_MINUTES")
    cache_ttl_seconds: int = env_field(600, "CACHE_TTL_SECONDS")
    cache_populate_timeout_seconds: float = env_field(
        5.0, "CACHE_POPULATE_TIMEOUT_SECONDS"
    )
    auth_operation_timeout_seconds: float = env_field(
        5.0,
        "AUTH_OPERATION_TIMEOUT_SECONDS",
        description="Deadline for each store/registry call on the authentication path",
    )
    request_timeout_seconds: float = env_field(10.0, "REQUEST_TIMEOUT_SECONDS")
    rate_limit_per_minute: int = env_field(
        100,
        "RATE_LIMIT_PER_MINUTE",
        description="Requests per client address per window on every /v1 route; 0 disables",
    )
    auth_rate_limit_per_minute: int = env_field(
        50,
        "AUTH_RATE_LIMIT_PER_MINUTE",
        description="Requests per client address per window on /v1/auth routes; 0 disables",
    )
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    audit_timeout_seconds: float = env_field(5.0, "AUDIT_TIMEOUT_SECONDS")
    cors_allow_origins: str = env_field("*", "CORS_ALLOW_ORIGINS")

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

    @field_validator("access_token_key", "refresh_token_key")
    @classmethod
    def _validate_key_material(cls, value: str) -> str:
        if not value or value.strip().lower() == GENERATE_KEY:
            return GENERATE_KEY
        KeyPair.from_setting(value)
        return value.strip()

    @field_validator(
        "access_token_expire_minutes",
        "refresh_token_expire_minutes",
        "cache_ttl_seconds",
        "rate_limit_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_expire_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_expire_minutes)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    def load_key_pairs(self) -> tuple[KeyPair, KeyPair]:
        access = KeyPair.from_setting(self.access_token_key)
        refresh = KeyPair.from_setting(self.refresh_token_key)
        if self.refresh_ttl < self.access_ttl:
            logger.warning(
                "refresh_ttl_shorter_than_access",
                access_minutes=self.access_token_expire_minutes,
                refresh_minutes=self.refresh_token_expire_minutes,
            )
        return access, refresh


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
