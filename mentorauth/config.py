from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mentorauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; development unlocks verbose OTP logging."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/mentorauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/mentorauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("mentorauth", "JWT_ISSUER")
    jwt_audience: str = env_field("mentorauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        6 * 60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token TTL in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        14 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL in minutes",
    )

    # One-time passwords
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_expiry_minutes: int = env_field(5, "OTP_EXPIRY_MINUTES")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_lockout_minutes: int = env_field(10, "OTP_LOCKOUT_MINUTES")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")
    signup_verification_window_minutes: int = env_field(
        30,
        "SIGNUP_VERIFICATION_WINDOW_MINUTES",
        description="How long a verified signup email stays usable for the mobile step",
    )

    # Password lockout
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    account_lock_minutes: int = env_field(15, "ACCOUNT_LOCK_MINUTES")

    # Devices
    max_sessions_per_user: int = env_field(2, "MAX_SESSIONS_PER_USER")
    max_streaming_sessions: int = env_field(1, "MAX_STREAMING_SESSIONS")
    device_inactivity_days: int = env_field(30, "DEVICE_INACTIVITY_DAYS")

    # Background sweeps
    token_cleanup_interval_seconds: int = env_field(
        24 * 60 * 60, "TOKEN_CLEANUP_INTERVAL_SECONDS"
    )
    device_cleanup_interval_seconds: int = env_field(
        24 * 60 * 60, "DEVICE_CLEANUP_INTERVAL_SECONDS"
    )

    # Endpoint throttles
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(5, "OTP_RATE_LIMIT_PER_MINUTE")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST", description="SMTP server host")
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER", description="SMTP username")
    smtp_password: str | None = env_field(
        None, "SMTP_PASSWORD", description="SMTP password"
    )
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS", description="Use STARTTLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Mentor Platform", "EMAIL_FROM_NAME")

    # SMS gateway (Twilio-compatible REST API)
    sms_api_url: str = env_field("https://api.twilio.com", "SMS_API_URL")
    sms_account_sid: str | None = env_field(None, "SMS_ACCOUNT_SID")
    sms_auth_token: str | None = env_field(None, "SMS_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")

    notification_workers: int = env_field(4, "NOTIFICATION_WORKERS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
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
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("otp_length")
    @classmethod
    def _otp_length_range(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("must be between 4 and 10 digits")
        return value

    @field_validator(
        "otp_max_attempts",
        "max_failed_login_attempts",
        "max_sessions_per_user",
        "max_streaming_sessions",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/mentorauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (containers)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
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
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
