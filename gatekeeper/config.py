from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Read a persisted signing secret from SHARED_FS_ROOT, generating one if absent."""

    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatekeeper"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= 32:
                return persisted

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
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field("postgresql://localhost:5432/gatekeeper", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatekeeper", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: in-process rate limits, resettable runtime",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gatekeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekeeper-clients", "JWT_AUDIENCE")
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")
    access_token_ttl_minutes: int = env_field(7 * 24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Login state machine
    max_failed_login_attempts: int = env_field(3, "MAX_FAILED_LOGIN_ATTEMPTS")
    lock_minutes: int = env_field(30, "ACCOUNT_LOCK_MINUTES")
    unlock_token_ttl_hours: int = env_field(24, "UNLOCK_TOKEN_TTL_HOURS")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    reveal_unknown_accounts: bool = env_field(
        False,
        "REVEAL_UNKNOWN_ACCOUNTS",
        description="Report unknown identifiers as not_found instead of invalid credentials",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Sessions
    session_timeout_hours: int = env_field(2, "SESSION_TIMEOUT_HOURS")
    reconciliation_lookback_hours: int = env_field(24, "SESSION_LOOKBACK_HOURS")
    session_idle_hours: int = env_field(24, "SESSION_IDLE_HOURS")
    session_sweep_interval_seconds: int = env_field(3600, "SESSION_SWEEP_INTERVAL_SECONDS")
    activity_retention_days: int = env_field(90, "ACTIVITY_RETENTION_DAYS")

    # System administrator (not stored in the credential store)
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")
    admin_name: str = env_field("System Administrator", "ADMIN_NAME")

    # Bot challenge
    captcha_enabled: bool = env_field(True, "CAPTCHA_ENABLED")
    captcha_bypass_token: str | None = env_field(None, "CAPTCHA_BYPASS_TOKEN")
    recaptcha_secret_key: str | None = env_field(None, "RECAPTCHA_SECRET_KEY")
    recaptcha_verify_url: str = env_field(
        "https://www.google.com/recaptcha/api/siteverify", "RECAPTCHA_VERIFY_URL"
    )

    # Federated login
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeeper", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # Rate limits (requests per window)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(10, "OTP_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")

    cors_allow_origins: str = env_field("http://localhost:3000", "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @field_validator("admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.strip().lower()

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "email_verification_ttl_hours",
        "password_reset_ttl_minutes",
        "max_failed_login_attempts",
        "lock_minutes",
        "unlock_token_ttl_hours",
        "otp_ttl_minutes",
        "session_timeout_hours",
        "reconciliation_lookback_hours",
        "session_idle_hours",
        "session_sweep_interval_seconds",
        "activity_retention_days",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("duration and threshold settings must be positive")
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.lock_minutes >= self.unlock_token_ttl_hours * 60:
            raise ValueError("account lock must expire before the unlock token does")
        if self.session_timeout_hours > self.reconciliation_lookback_hours:
            raise ValueError("session timeout cannot exceed the reconciliation lookback window")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
