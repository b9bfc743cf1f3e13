from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tablesession.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/tablesession"
_MIN_SECRET_LENGTH = 32


class FingerprintMismatchPolicy(str, Enum):
    """What a refresh does when the presenting device differs from the bound one."""

    STRICT = "strict"
    WARN = "warn"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    The file lives under SHARED_FS_ROOT so every worker of one deployment signs
    with the same key and tokens survive restarts.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. container mount)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the token and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tablesession", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits runtime resets",
    )

    # Token signing. Access and refresh tokens never share a key.
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("restaurant-template", "JWT_ISSUER")
    jwt_audience: str = env_field("restaurant-app", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime when the client asked to be remembered",
    )
    refresh_token_short_ttl_minutes: int = env_field(
        24 * 60,
        "REFRESH_TOKEN_SHORT_TTL_MINUTES",
        description="Refresh token lifetime without remember-me",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")

    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")
    max_active_sessions: int = env_field(
        5,
        "MAX_ACTIVE_SESSIONS",
        description="Active sessions per user before the least recent is revoked; 0 disables",
    )
    fingerprint_include_ip: bool = env_field(
        False,
        "FINGERPRINT_INCLUDE_IP",
        description="Bind tokens to the client IP as well; breaks on mobile IP churn",
    )
    fingerprint_mismatch_policy: FingerprintMismatchPolicy = env_field(
        FingerprintMismatchPolicy.STRICT, "FINGERPRINT_MISMATCH_POLICY"
    )

    cache_timeout_seconds: float = env_field(1.0, "CACHE_TIMEOUT_SECONDS")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")

    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/auth", "REFRESH_COOKIE_PATH")
    refresh_cookie_samesite: str = env_field("strict", "REFRESH_COOKIE_SAMESITE")
    refresh_cookie_secure: bool = env_field(True, "REFRESH_COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Fixed-window limits, per client IP
    rate_limit_window_seconds: int = env_field(3600, "RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    refresh_rate_limit: int = env_field(20, "REFRESH_RATE_LIMIT")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    logout_rate_limit: int = env_field(30, "LOGOUT_RATE_LIMIT")
    revoke_rate_limit: int = env_field(20, "REVOKE_RATE_LIMIT")
    sessions_rate_limit: int = env_field(30, "SESSIONS_RATE_LIMIT")
    profile_rate_limit: int = env_field(60, "PROFILE_RATE_LIMIT")
    otp_send_rate_limit: int = env_field(5, "OTP_SEND_RATE_LIMIT")
    otp_verify_rate_limit: int = env_field(10, "OTP_VERIFY_RATE_LIMIT")
    audit_export_rate_limit: int = env_field(30, "AUDIT_EXPORT_RATE_LIMIT")

    # One-time codes sent to a phone
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_max_requests_per_phone: int = env_field(
        5,
        "OTP_MAX_REQUESTS_PER_PHONE",
        description="Codes a phone may request per rate-limit window before it is blocked",
    )
    otp_block_seconds: int = env_field(24 * 60 * 60, "OTP_BLOCK_SECONDS")

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

    @field_validator("fingerprint_mismatch_policy", mode="before")
    @classmethod
    def _validate_mismatch_policy(cls, value: Any) -> FingerprintMismatchPolicy:
        if isinstance(value, str):
            value = value.strip().lower()
        return FingerprintMismatchPolicy(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("refresh_cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"strict", "lax", "none"}:
            raise ValueError("refresh_cookie_samesite must be strict, lax or none")
        return normalized

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "refresh_token_short_ttl_minutes",
        "rate_limit_window_seconds",
        "otp_length",
        "otp_ttl_seconds",
        "otp_max_attempts",
        "otp_max_requests_per_phone",
        "otp_block_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _secrets_must_differ(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different")
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
