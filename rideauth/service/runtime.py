from __future__ import annotations

import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from rideauth.config import Settings, get_settings, reset_settings_cache
from rideauth.logging import get_logger, set_correlation_id
from rideauth.service.audit import AuditSink, LoggingAuditSink
from rideauth.service.auth import AuthService
from rideauth.service.delivery import CodeDelivery, HttpSmsSender, SmtpEmailSender
from rideauth.service.lockout import LoginAttemptGovernor
from rideauth.service.passwords import PasswordHasherService
from rideauth.service.rate_limit import InMemoryRateLimitBackend, RateLimiter
from rideauth.service.sessions import SessionRegistry
from rideauth.service.tokens import TokenIssuer
from rideauth.service.verification import VerificationCodeEngine
from rideauth.storage.memory import MemoryStore
from rideauth.storage.models import Purpose
from rideauth.storage.postgres import PostgresStore
from rideauth.storage.redis_cache import RedisRateLimitBackend

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _expiry_table(settings: Settings) -> Dict[Purpose, timedelta]:
    contact = timedelta(minutes=settings.verification_expiry_minutes)
    return {
        Purpose.EMAIL: contact,
        Purpose.SMS: contact,
        Purpose.PASSWORD_RESET: contact,
        Purpose.TWO_FACTOR: timedelta(minutes=settings.two_factor_expiry_minutes),
    }


def _cooldown_table(settings: Settings) -> Dict[Purpose, timedelta]:
    return {
        Purpose.EMAIL: timedelta(minutes=settings.email_resend_cooldown_minutes),
        Purpose.SMS: timedelta(minutes=settings.sms_resend_cooldown_minutes),
        Purpose.PASSWORD_RESET: timedelta(
            minutes=settings.password_reset_resend_cooldown_minutes
        ),
        Purpose.TWO_FACTOR: timedelta(minutes=settings.two_factor_resend_cooldown_minutes),
    }


class Runtime:
    """Holds the wired service instances for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        audit: Optional[AuditSink] = None,
        clock=None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        memory_mode = self.settings.use_memory_store or self.settings.test_mode
        if store is not None:
            self.store = store
        else:
            try:
                self.store = (
                    MemoryStore(
                        fs_root=None if self.settings.test_mode else self.settings.state_dir
                    )
                    if memory_mode
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if memory_mode else "postgres",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        logger.info(
            "runtime_store_initialized", store_type=type(self.store).__name__
        )

        self.rate_limit_backend = self._build_rate_limit_backend()
        self.audit = audit or LoggingAuditSink()

        self.hasher = PasswordHasherService(self.settings.password_work_factor)
        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=self.settings.token_leeway_seconds),
            clock=clock,
        )
        self.governor = LoginAttemptGovernor(
            self.store,
            max_attempts=self.settings.max_login_attempts,
            lockout=timedelta(minutes=self.settings.lockout_minutes),
            audit=self.audit,
            clock=clock,
        )
        self.sessions = SessionRegistry(
            self.store,
            self.tokens,
            max_active_sessions=self.settings.max_active_sessions,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            audit=self.audit,
            clock=clock,
        )
        self.verifier = VerificationCodeEngine(
            self.store,
            max_attempts=self.settings.max_verification_attempts,
            expiry=_expiry_table(self.settings),
            resend_cooldown=_cooldown_table(self.settings),
            audit=self.audit,
            clock=clock,
        )
        self.limiter = RateLimiter(
            self.rate_limit_backend, settings=self.settings, clock=clock
        )
        self.email = SmtpEmailSender(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = HttpSmsSender(
            gateway_url=self.settings.sms_gateway_url,
            api_token=self.settings.sms_gateway_token,
            sender_id=self.settings.sms_sender_id,
        )
        self.delivery = CodeDelivery(self.email, self.sms)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            governor=self.governor,
            sessions=self.sessions,
            verifier=self.verifier,
            limiter=self.limiter,
            delivery=self.delivery,
            audit=self.audit,
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.rate_limit_backend, RedisRateLimitBackend),
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )

    def _build_rate_limit_backend(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                backend = RedisRateLimitBackend(self.settings.redis_url)
                backend.verify_connection()
                return backend
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limit counters "
                "are per-process only."
            ),
            mode=fallback_mode,
        )
        return InMemoryRateLimitBackend()

    def run_maintenance(self) -> Dict[str, int]:
        """Sweep expired sessions, codes and rate-limit windows.

        Safe to run from any number of workers; every sweep is idempotent.
        """
        set_correlation_id()
        summary = {
            "sessions_ended": self.sessions.cleanup_expired(),
            "verifications_retired": self.verifier.cleanup_expired(),
            "rate_limit_windows_purged": self.limiter.purge_expired(),
        }
        logger.info("maintenance_completed", **summary)
        return summary

    def close(self) -> None:
        close_backend = getattr(self.rate_limit_backend, "close", None)
        if close_backend is not None:
            close_backend()
        self.sms.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime
