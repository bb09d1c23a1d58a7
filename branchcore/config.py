from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from branchcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and identifier core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/branchcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/branchcore", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    # Credentials
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 30,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token (session) lifetime in minutes",
    )
    reset_password_token_ttl_minutes: int = env_field(
        10, "RESET_PASSWORD_TOKEN_TTL_MINUTES"
    )
    verify_email_token_ttl_minutes: int = env_field(
        60, "VERIFY_EMAIL_TOKEN_TTL_MINUTES"
    )
    clock_skew_leeway_seconds: int = env_field(
        0,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Grace applied to token exp checks for clock drift across nodes",
    )

    # Sessions
    rotate_refresh_tokens: bool = env_field(True, "ROTATE_REFRESH_TOKENS")
    session_login_retries: int = env_field(
        3,
        "SESSION_LOGIN_RETRIES",
        description="Attempts to win the active-session slot against a concurrent login",
    )
    rapid_refresh_limit: int = env_field(
        10,
        "RAPID_REFRESH_LIMIT",
        description="Refreshes of one session per window before a RAPID_REFRESH event",
    )
    rapid_refresh_window_seconds: int = env_field(300, "RAPID_REFRESH_WINDOW_SECONDS")
    security_event_retention_days: int = env_field(90, "SECURITY_EVENT_RETENTION_DAYS")

    # Sequences
    sequence_max_retries: int = env_field(8, "SEQUENCE_MAX_RETRIES")
    sequence_retry_backoff_ms: int = env_field(5, "SEQUENCE_RETRY_BACKOFF_MS")
    sequence_timestamp_fallback: bool = env_field(
        True,
        "SEQUENCE_TIMESTAMP_FALLBACK",
        description="Degrade to a timestamp suffix instead of failing when retries run out",
    )
    business_timezone: str = env_field(
        "Europe/Rome",
        "BUSINESS_TIMEZONE",
        description="Time zone used to derive day/month/year identifier scopes",
    )

    # Store
    store_statement_timeout_ms: int = env_field(5000, "STORE_STATEMENT_TIMEOUT_MS")
    store_pool_min_size: int = env_field(2, "STORE_POOL_MIN_SIZE")
    store_pool_max_size: int = env_field(10, "STORE_POOL_MAX_SIZE")

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
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.business_timezone)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "reset_password_token_ttl_minutes",
        "verify_email_token_ttl_minutes",
        "session_login_retries",
        "rapid_refresh_limit",
        "rapid_refresh_window_seconds",
        "security_event_retention_days",
        "sequence_max_retries",
        "store_statement_timeout_ms",
        "store_pool_min_size",
        "store_pool_max_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("clock_skew_leeway_seconds", "sequence_retry_backoff_ms")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("business_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone: {value}") from exc
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _shared_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/branchcore")))


_SECRET_FILE = ".jwt_secret"
_MIN_SECRET_LENGTH = 32


def _shared_secret(fs_root: Path) -> str:
    """Signing secret shared by every node mounting ``fs_root``.

    The first process to start creates it; all others, including ones racing
    that first start, read the same value back.
    """
    path = fs_root / _SECRET_FILE
    try:
        if not path.exists():
            fs_root.mkdir(parents=True, exist_ok=True)
            _publish_secret(fs_root, path)
        secret = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_unavailable", error=str(exc), path=str(path))
        raise RuntimeError(
            "cannot read or create the JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(f"{path} holds no usable secret; remove it or set JWT_SECRET")
    return secret


def _publish_secret(fs_root: Path, path: Path) -> None:
    # mkstemp files are 0600; link() refuses to replace an existing secret
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_")
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(secrets.token_urlsafe(64))
        with contextlib.suppress(FileExistsError):
            os.link(tmp_path, path)
            logger.info("jwt_secret_generated", path=str(path))
    finally:
        os.unlink(tmp_path)


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
