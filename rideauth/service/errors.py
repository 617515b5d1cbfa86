from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for expected authentication outcomes surfaced to callers.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` so
    the HTTP adapter can render it without inspecting the message.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidInput(ServiceError):
    status_code = 400
    error_code = "invalid_input"


class InvalidCredentials(ServiceError):
    """Unknown account or wrong password; the two are never distinguished."""

    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self, locked_until: datetime, message: str = "account temporarily locked"
    ) -> None:
        super().__init__(message, detail={"locked_until": locked_until.isoformat()})
        self.locked_until = locked_until


class Unauthenticated(ServiceError):
    status_code = 401
    error_code = "unauthenticated"


class TokenExpired(ServiceError):
    status_code = 401
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(ServiceError):
    status_code = 401
    error_code = "token_invalid"


class SessionInvalid(ServiceError):
    """Token verified but its session is revoked, expired or missing."""

    status_code = 401
    error_code = "session_invalid"

    def __init__(self, message: str = "session is no longer valid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class VerificationError(ServiceError):
    pass


class VerificationNotFound(VerificationError):
    status_code = 404
    error_code = "verification_not_found"


class VerificationAlreadyUsed(VerificationError):
    status_code = 409
    error_code = "verification_already_used"


class VerificationExpired(VerificationError):
    status_code = 410
    error_code = "verification_expired"


class VerificationAttemptsExhausted(VerificationError):
    status_code = 429
    error_code = "verification_attempts_exhausted"


class VerificationMismatch(VerificationError):
    status_code = 400
    error_code = "verification_mismatch"

    def __init__(self, message: str, *, attempts_remaining: int) -> None:
        super().__init__(message, detail={"attempts_remaining": attempts_remaining})
        self.attempts_remaining = attempts_remaining


class RateLimited(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_ms: int, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after_ms", retry_after_ms)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_ms = retry_after_ms


class ResendCooldown(RateLimited):
    error_code = "resend_cooldown"


__all__ = [
    "ServiceError",
    "InvalidInput",
    "InvalidCredentials",
    "AccountLocked",
    "Unauthenticated",
    "TokenExpired",
    "TokenInvalid",
    "SessionInvalid",
    "VerificationError",
    "VerificationNotFound",
    "VerificationAlreadyUsed",
    "VerificationExpired",
    "VerificationAttemptsExhausted",
    "VerificationMismatch",
    "RateLimited",
    "ResendCooldown",
]
