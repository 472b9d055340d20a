from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradegate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and access service."""

    app_name: str = env_field("Tradegate", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/tradegate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tradegate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors; permits runtime resets and Redis-less operation.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tradegate", "JWT_ISSUER")
    jwt_audience: str = env_field("tradegate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    admin_setup_token_ttl_minutes: int = env_field(
        15,
        "ADMIN_SETUP_TOKEN_TTL_MINUTES",
        description="Lifetime of the limited token handed out on first admin login",
    )

    # One-time codes and reset links
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    reset_token_ttl_minutes: int = env_field(15, "RESET_TOKEN_TTL_MINUTES")

    # Password hashing work factor
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")

    # Admin credentials and lockout
    admin_credentials_ttl_hours: int = env_field(24, "ADMIN_CREDENTIALS_TTL_HOURS")
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    # Supplier verification
    supplier_reapply_cooldown_days: int = env_field(
        30, "SUPPLIER_REAPPLY_COOLDOWN_DAYS"
    )
    max_document_bytes: int = env_field(10 * 1024 * 1024, "MAX_DOCUMENT_BYTES")

    reveal_account_state: bool = env_field(
        True,
        "REVEAL_ACCOUNT_STATE",
        description=(
            "Report unverified/inactive accounts with distinct codes before the "
            "password check; when false they surface as INVALID_CREDENTIALS"
        ),
    )

    # Social login
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tradegate", "EMAIL_FROM_NAME")

    # SMS delivery
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")
    sms_sender_id: str = env_field("TRDGTE", "SMS_SENDER_ID")

    # Unconfigured channels write messages to the log instead of failing
    notification_dev_mode: bool = env_field(False, "NOTIFICATION_DEV_MODE")

    model_config = ConfigDict(extra="ignore")

    @staticmethod
    def env_name(name: str, field) -> str:
        extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
        return extra.get("env") or name.upper()

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from ``.env`` overlaid with the process environment."""
        sources = {**dotenv_values(env_file), **os.environ}
        values = {}
        for name, field in cls.model_fields.items():
            env_name = cls.env_name(name, field)
            if sources.get(env_name) is not None:
                values[name] = sources[env_name]
        return cls(**values)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "otp_length",
        "otp_ttl_minutes",
        "reset_token_ttl_minutes",
        "max_failed_login_attempts",
        "lockout_minutes",
        "admin_credentials_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("supplier_reapply_cooldown_days")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("cooldown cannot be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_jwt_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/tradegate")))


_MIN_SECRET_LENGTH = 32


def _persisted_jwt_secret(fs_root: Path) -> str:
    """Read ``.jwt_secret`` under ``fs_root``, creating it (0600) on first start."""
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_unavailable", path=str(fs_root), error=str(exc))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            existing = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(secret_path), error=str(exc))
        else:
            if len(existing) >= _MIN_SECRET_LENGTH:
                return existing
            logger.warning("jwt_secret_too_short_regenerating", path=str(secret_path))

    secret = secrets.token_urlsafe(64)
    fd, tmp_name = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return secret


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
