from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only hooks such as runtime resets",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound on any single store or cache call",
    )
    store_retry_attempts: int = env_field(3, "STORE_RETRY_ATTEMPTS", ge=1)
    store_retry_backoff_seconds: float = env_field(
        0.05, "STORE_RETRY_BACKOFF_SECONDS", ge=0
    )

    # tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    clock_skew_seconds: int = env_field(
        30,
        "CLOCK_SKEW_SECONDS",
        ge=0,
        description="Leeway applied to exp and iat checks",
    )

    # lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", gt=0)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", gt=0)

    # rate limits (points per window)
    login_rate_limit_points: int = env_field(5, "LOGIN_RATE_LIMIT_POINTS", gt=0)
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    reset_rate_limit_points: int = env_field(3, "RESET_RATE_LIMIT_POINTS", gt=0)
    reset_rate_limit_window_seconds: int = env_field(
        60 * 60, "RESET_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    gate_rate_limit_points: int = env_field(
        100,
        "GATE_RATE_LIMIT_POINTS",
        gt=0,
        description="Failed protected-route authentications allowed per IP per window",
    )
    gate_rate_limit_window_seconds: int = env_field(
        15 * 60, "GATE_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    mfa_rate_limit_points: int = env_field(5, "MFA_RATE_LIMIT_POINTS", gt=0)
    mfa_rate_limit_window_seconds: int = env_field(
        5 * 60, "MFA_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    password_change_rate_limit_points: int = env_field(
        5, "PASSWORD_CHANGE_RATE_LIMIT_POINTS", gt=0
    )
    password_change_rate_limit_window_seconds: int = env_field(
        5 * 60, "PASSWORD_CHANGE_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )

    # password reset / sessions
    reset_code_ttl_minutes: int = env_field(10, "RESET_CODE_TTL_MINUTES", gt=0)
    replay_revokes_all_sessions: bool = env_field(
        True,
        "REPLAY_REVOKES_ALL_SESSIONS",
        description="On refresh-token replay, revoke every session of the user",
    )

    # mfa
    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )
    mfa_issuer: str = env_field("AuthCore", "MFA_ISSUER")
    mfa_backup_code_count: int = env_field(5, "MFA_BACKUP_CODE_COUNT", ge=0)

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # http
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed CORS origins",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

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

    @field_validator("redis_url", "smtp_host", "mfa_secret_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # directory may already exist with other permissions (containers)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _validate_windows(self) -> "Settings":
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError(
                "REFRESH_TOKEN_TTL_MINUTES must exceed ACCESS_TOKEN_TTL_MINUTES"
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
