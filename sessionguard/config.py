from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    session_ttl_seconds: int = env_field(
        3600,
        "SESSION_TTL_SECONDS",
        description="Lifetime of a login session; also the live record TTL",
    )
    max_sessions_per_user: int = env_field(
        2,
        "MAX_SESSIONS_PER_USER",
        description="Concurrent session cap per user; 0 disables eviction",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    admin_api_key: str | None = env_field(
        None,
        "ADMIN_API_KEY",
        description="Shared secret for the X-Admin-Token header; unset disables admin routes",
    )

    # Reconciliation worker
    worker_enabled: bool = env_field(
        True,
        "WORKER_ENABLED",
        description="Run the reconciliation worker inside the API process",
    )
    worker_concurrency: int = env_field(10, "WORKER_CONCURRENCY")
    worker_poll_interval: float = env_field(1.0, "WORKER_POLL_INTERVAL")
    worker_batch_size: int = env_field(50, "WORKER_BATCH_SIZE")
    worker_max_retries: int = env_field(5, "WORKER_MAX_RETRIES")
    worker_retry_delay_seconds: int = env_field(10, "WORKER_RETRY_DELAY_SECONDS")
    worker_lease_seconds: int = env_field(
        60,
        "WORKER_LEASE_SECONDS",
        description="How long a claimed job stays invisible before it is re-queued",
    )

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
        return value or None

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("session_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("SESSION_TTL_SECONDS must be positive")
        return value

    @field_validator("max_sessions_per_user", "worker_max_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @field_validator("worker_concurrency", "worker_batch_size")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, value)


@dataclass(frozen=True)
class SessionPolicy:
    """Immutable per-engine session configuration."""

    session_ttl: timedelta = timedelta(seconds=3600)
    max_sessions_per_user: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionPolicy":
        return cls(
            session_ttl=timedelta(seconds=settings.session_ttl_seconds),
            max_sessions_per_user=settings.max_sessions_per_user,
        )


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
