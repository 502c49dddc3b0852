from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from musicez.logging import get_logger
from musicez.service.errors import ConfigurationError

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(value: str) -> timedelta:
    """Parse a compact duration such as ``15m``, ``24h`` or ``7d``."""
    if not isinstance(value, str):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit])


@dataclass(frozen=True)
class JWTConfig:
    """Signing parameters shared by the token issuer and the session registry."""

    secret: str
    access_token_expiry: str = "15m"
    refresh_token_expiry: str = "7d"
    issuer: str = "musicez-api"
    audience: str = "musicez-client"
    leeway_seconds: int = 0

    @property
    def access_token_ttl(self) -> timedelta:
        return parse_duration(self.access_token_expiry)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return parse_duration(self.refresh_token_expiry)


@dataclass(frozen=True)
class SessionConfig:
    session_timeout: str = "24h"
    max_sessions_per_user: int = 10
    cleanup_interval: str = "1h"
    inactive_threshold: str = "30d"
    track_device_info: bool = True
    require_device_consistency: bool = False


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity subsystem."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep sessions in process memory instead of Redis (single-node dev only)",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("musicez-api", "JWT_ISSUER")
    jwt_audience: str = env_field("musicez-client", "JWT_AUDIENCE")
    jwt_access_token_expiry: str = env_field("15m", "JWT_ACCESS_TOKEN_EXPIRY")
    jwt_refresh_token_expiry: str | None = env_field("7d", "JWT_REFRESH_TOKEN_EXPIRY")

    session_timeout: str = env_field("24h", "SESSION_TIMEOUT")
    max_sessions_per_user: int = env_field(
        10,
        "MAX_SESSIONS_PER_USER",
        description="Live sessions allowed per user; 0 disables the cap",
    )
    session_cleanup_interval: str = env_field("1h", "SESSION_CLEANUP_INTERVAL")
    session_inactive_threshold: str = env_field("30d", "SESSION_INACTIVE_THRESHOLD")
    session_cleanup_enabled: bool = env_field(True, "SESSION_CLEANUP_ENABLED")
    track_device_info: bool = env_field(True, "TRACK_DEVICE_INFO")
    require_device_consistency: bool = env_field(False, "REQUIRE_DEVICE_CONSISTENCY")

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

    @field_validator(
        "jwt_access_token_expiry",
        "session_timeout",
        "session_cleanup_interval",
        "session_inactive_threshold",
    )
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        try:
            parse_duration(value)
        except ConfigurationError as exc:
            raise ValueError(exc.message) from exc
        return value

    @field_validator("jwt_refresh_token_expiry")
    @classmethod
    def _validate_refresh_expiry(cls, value: str | None) -> str | None:
        if not value:
            return None
        try:
            parse_duration(value)
        except ConfigurationError as exc:
            raise ValueError(exc.message) from exc
        return value

    @field_validator("max_sessions_per_user")
    @classmethod
    def _validate_session_cap(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_sessions_per_user must be >= 0")
        return value

    def jwt_config(self) -> JWTConfig:
        """Build the signing config; a missing secret is fatal at startup."""
        if not self.jwt_secret or not self.jwt_secret.strip():
            raise ConfigurationError("JWT_SECRET is required")
        if len(self.jwt_secret) < 32:
            logger.warning("jwt_secret_short", length=len(self.jwt_secret))
        return JWTConfig(
            secret=self.jwt_secret,
            access_token_expiry=self.jwt_access_token_expiry,
            # Sessions double as refresh tokens, so the refresh lifetime falls
            # back to the session timeout when unset.
            refresh_token_expiry=self.jwt_refresh_token_expiry or self.session_timeout,
            issuer=self.jwt_issuer,
            audience=self.jwt_audience,
        )

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            session_timeout=self.session_timeout,
            max_sessions_per_user=self.max_sessions_per_user,
            cleanup_interval=self.session_cleanup_interval,
            inactive_threshold=self.session_inactive_threshold,
            track_device_info=self.track_device_info,
            require_device_consistency=self.require_device_consistency,
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
