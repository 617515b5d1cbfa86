from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rideauth.logging import get_logger

logger = get_logger(__name__)


class EndpointClass(str, Enum):
    """Rate-limit buckets for inbound endpoints."""

    GENERAL = "general"
    AUTH = "auth"
    VERIFICATION = "verification"


@dataclass(frozen=True)
class RateLimitPolicy:
    window_ms: int
    max_requests: int
    skip_successful_requests: bool = False


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/rideauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    state_dir: str = env_field("/srv/rideauth", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for tests (runtime reset, memory fallbacks).",
    )

    maintenance_interval_seconds: int = env_field(
        300,
        "MAINTENANCE_INTERVAL_SECONDS",
        description="Period of the in-process cleanup sweep; 0 leaves it to scripts/run_maintenance.py",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Allowed clock skew when checking token expiry",
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and retire the old one",
    )

    # Credentials and lockout
    password_work_factor: int = env_field(
        12,
        "PASSWORD_WORK_FACTOR",
        description="argon2 memory cost exponent; memory = 2 ** (factor + 4) KiB",
    )
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    max_active_sessions: int = env_field(
        5,
        "MAX_ACTIVE_SESSIONS",
        description="Advisory per-account session ceiling; exceeding it is logged only",
    )

    # Verification codes
    verification_expiry_minutes: int = env_field(15, "VERIFICATION_EXPIRY_MINUTES")
    two_factor_expiry_minutes: int = env_field(5, "TWO_FACTOR_EXPIRY_MINUTES")
    max_verification_attempts: int = env_field(3, "MAX_VERIFICATION_ATTEMPTS")
    email_resend_cooldown_minutes: int = env_field(2, "EMAIL_RESEND_COOLDOWN_MINUTES")
    sms_resend_cooldown_minutes: int = env_field(2, "SMS_RESEND_COOLDOWN_MINUTES")
    password_reset_resend_cooldown_minutes: int = env_field(
        5, "PASSWORD_RESET_RESEND_COOLDOWN_MINUTES"
    )
    two_factor_resend_cooldown_minutes: int = env_field(
        1, "TWO_FACTOR_RESEND_COOLDOWN_MINUTES"
    )

    # Rate limits
    rate_limit_window_minutes: int = env_field(15, "RATE_LIMIT_WINDOW_MINUTES")
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    auth_rate_limit_window_minutes: int = env_field(
        15, "AUTH_RATE_LIMIT_WINDOW_MINUTES"
    )
    auth_rate_limit_max_requests: int = env_field(10, "AUTH_RATE_LIMIT_MAX_REQUESTS")
    auth_rate_limit_skip_successful: bool = env_field(
        False, "AUTH_RATE_LIMIT_SKIP_SUCCESSFUL"
    )
    verification_rate_limit_window_minutes: int = env_field(
        1, "VERIFICATION_RATE_LIMIT_WINDOW_MINUTES"
    )
    verification_rate_limit_max_requests: int = env_field(
        3, "VERIFICATION_RATE_LIMIT_MAX_REQUESTS"
    )
    verification_rate_limit_skip_successful: bool = env_field(
        True, "VERIFICATION_RATE_LIMIT_SKIP_SUCCESSFUL"
    )

    # Delivery channels
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Elyte Platform", "EMAIL_FROM_NAME")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")
    sms_sender_id: str = env_field("Elyte", "SMS_SENDER_ID")

    model_config = ConfigDict(extra="ignore", validate_default=True)

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_login_attempts",
        "lockout_minutes",
        "verification_expiry_minutes",
        "two_factor_expiry_minutes",
        "max_verification_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("password_work_factor")
    @classmethod
    def _validate_work_factor(cls, value: int) -> int:
        # argon2 requires at least 8 KiB per lane (4 lanes)
        if not 1 <= value <= 20:
            raise ValueError("password work factor must be between 1 and 20")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        state_root = Path(os.getenv("STATE_DIR", "/srv/rideauth"))
        secret_path = state_root / ".jwt_secret"

        try:
            state_root.mkdir(parents=True, exist_ok=True)
            os.chmod(state_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_root),
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
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated

    def rate_limit_policy(self, endpoint_class: EndpointClass | str) -> RateLimitPolicy:
        endpoint = EndpointClass(endpoint_class)
        if endpoint is EndpointClass.AUTH:
            return RateLimitPolicy(
                window_ms=self.auth_rate_limit_window_minutes * 60 * 1000,
                max_requests=self.auth_rate_limit_max_requests,
                skip_successful_requests=self.auth_rate_limit_skip_successful,
            )
        if endpoint is EndpointClass.VERIFICATION:
            return RateLimitPolicy(
                window_ms=self.verification_rate_limit_window_minutes * 60 * 1000,
                max_requests=self.verification_rate_limit_max_requests,
                skip_successful_requests=self.verification_rate_limit_skip_successful,
            )
        return RateLimitPolicy(
            window_ms=self.rate_limit_window_minutes * 60 * 1000,
            max_requests=self.rate_limit_max_requests,
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
