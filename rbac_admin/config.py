from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rbac_admin.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; only error-message detail depends on this."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and access service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/rbac_admin", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for the test suite.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("rbac-admin-internal", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    reset_token_ttl_minutes: int = env_field(
        30, "RESET_TOKEN_TTL_MINUTES", gt=0
    )
    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        ge=1,
        description="Consecutive failed logins before the account locks",
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=4)
    user_cache_capacity: int = env_field(500, "USER_CACHE_CAPACITY", ge=1)
    role_cache_capacity: int = env_field(100, "ROLE_CACHE_CAPACITY", ge=1)
    transaction_retry_attempts: int = env_field(
        3,
        "TRANSACTION_RETRY_ATTEMPTS",
        ge=1,
        description="Total attempts for deadlock/serialization/connection failures",
    )
    transaction_retry_delay_ms: int = env_field(50, "TRANSACTION_RETRY_DELAY_MS", ge=0)
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    seed_on_startup: bool = env_field(
        False,
        "SEED_ON_STARTUP",
        description="Provision the permission catalogue and built-in roles at startup",
    )
    admin_username: str = env_field("superadmin", "ADMIN_USERNAME")
    admin_email: str = env_field("superadmin@example.com", "ADMIN_EMAIL")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value or not value.strip():
            logger.error("jwt_secret_missing")
            raise ValueError(
                "JWT_SECRET must be set; tokens cannot be signed without it"
            )
        return value


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
