from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from rideauth.logging import get_logger
from rideauth.service.audit import AuditEvent, AuditSink, LoggingAuditSink
from rideauth.service.errors import (
    ResendCooldown,
    VerificationAlreadyUsed,
    VerificationAttemptsExhausted,
    VerificationExpired,
    VerificationMismatch,
    VerificationNotFound,
)
from rideauth.storage.models import Purpose, VerificationRecord

logger = get_logger(__name__)

CODE_LENGTH = 6

DEFAULT_EXPIRY = {
    Purpose.EMAIL: timedelta(minutes=15),
    Purpose.SMS: timedelta(minutes=15),
    Purpose.PASSWORD_RESET: timedelta(minutes=15),
    Purpose.TWO_FACTOR: timedelta(minutes=5),
}

DEFAULT_RESEND_COOLDOWN = {
    Purpose.EMAIL: timedelta(minutes=2),
    Purpose.SMS: timedelta(minutes=2),
    Purpose.PASSWORD_RESET: timedelta(minutes=5),
    Purpose.TWO_FACTOR: timedelta(minutes=1),
}

# Bound on re-reads when a conditional update loses a race
_MAX_SETTLE_ROUNDS = 3


@dataclass(frozen=True)
class IssuedCode:
    record_id: str
    purpose: Purpose
    code: str
    opaque_token: str
    expires_at: datetime


def hash_opaque_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class VerificationCodeEngine:
    """Single-use, expiring, attempt-limited codes per (account, purpose).

    Only the most recent record for a purpose is consulted. Its state
    machine is ``Pending -> Used``, ``Pending -> Exhausted`` or
    ``Pending -> Expired``; every transition goes through a conditional
    store update so concurrent guesses cannot exceed ``max_attempts``.
    Delivery of codes is left to the caller.
    """

    def __init__(
        self,
        store,
        *,
        max_attempts: int = 3,
        expiry: Optional[Mapping[Purpose, timedelta]] = None,
        resend_cooldown: Optional[Mapping[Purpose, timedelta]] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.expiry = {**DEFAULT_EXPIRY, **(expiry or {})}
        self.resend_cooldown = {**DEFAULT_RESEND_COOLDOWN, **(resend_cooldown or {})}
        self.audit = audit or LoggingAuditSink()
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def _generate_code() -> str:
        return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"

    def issue(
        self,
        account_id: str,
        purpose: Purpose | str,
        expiry_minutes: Optional[int] = None,
    ) -> IssuedCode:
        purpose = Purpose(purpose)
        ttl = (
            timedelta(minutes=expiry_minutes)
            if expiry_minutes is not None
            else self.expiry[purpose]
        )
        code = self._generate_code()
        opaque_token = secrets.token_urlsafe(32)
        record = VerificationRecord.new(
            account_id,
            purpose,
            code,
            hash_opaque_token(opaque_token),
            now=self._now(),
            ttl=ttl,
            max_attempts=self.max_attempts,
        )
        self.store.create_verification(record)
        self.audit.emit(
            AuditEvent.VERIFICATION_ISSUED,
            account_id=account_id,
            purpose=purpose.value,
            record_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedCode(
            record_id=record.id,
            purpose=purpose,
            code=code,
            opaque_token=opaque_token,
            expires_at=record.expires_at,
        )

    def resend(
        self,
        account_id: str,
        purpose: Purpose | str,
        expiry_minutes: Optional[int] = None,
    ) -> IssuedCode:
        """Void any unused code for the purpose and issue a fresh one.

        Raises ``ResendCooldown`` while the latest record is younger than the
        purpose's cooldown.
        """
        purpose = Purpose(purpose)
        now = self._now()
        latest = self.store.latest_verification(account_id, purpose)
        cooldown = self.resend_cooldown.get(purpose, timedelta(0))
        if latest is not None and cooldown:
            elapsed = now - latest.created_at
            if elapsed < cooldown:
                retry_after_ms = int((cooldown - elapsed).total_seconds() * 1000)
                logger.info(
                    "verification_resend_throttled",
                    account_id=account_id,
                    purpose=purpose.value,
                    retry_after_ms=retry_after_ms,
                )
                raise ResendCooldown(
                    "please wait before requesting another code",
                    retry_after_ms=max(1, retry_after_ms),
                )
        voided = self.store.supersede_verifications(account_id, purpose)
        if voided:
            logger.info(
                "verification_superseded",
                account_id=account_id,
                purpose=purpose.value,
                count=voided,
            )
        return self.issue(account_id, purpose, expiry_minutes)

    def verify(self, account_id: str, purpose: Purpose | str, supplied_code: str) -> bool:
        supplied = str(supplied_code or "").strip()

        def _matches(record: VerificationRecord) -> bool:
            return hmac.compare_digest(record.code.encode(), supplied.encode())

        return self._settle(account_id, Purpose(purpose), _matches)

    def verify_token(self, account_id: str, purpose: Purpose | str, opaque_token: str) -> bool:
        """Link-based variant of :meth:`verify` comparing opaque token hashes."""
        supplied_hash = hash_opaque_token(str(opaque_token or ""))

        def _matches(record: VerificationRecord) -> bool:
            return hmac.compare_digest(record.token_hash, supplied_hash)

        return self._settle(account_id, Purpose(purpose), _matches)

    def matches_token(self, account_id: str, purpose: Purpose | str, opaque_token: str) -> bool:
        """Check an opaque token against the latest record without consuming it."""
        record = self.store.latest_verification(account_id, Purpose(purpose))
        # Issued tokens are urlsafe base64
        if record is None or not opaque_token or not opaque_token.isascii():
            return False
        return hmac.compare_digest(record.token_hash, hash_opaque_token(opaque_token))

    def _settle(
        self,
        account_id: str,
        purpose: Purpose,
        matches: Callable[[VerificationRecord], bool],
    ) -> bool:
        now = self._now()
        record = self.store.latest_verification(account_id, purpose)
        for _ in range(_MAX_SETTLE_ROUNDS):
            record = self._ensure_pending(record, now)
            if matches(record):
                consumed = self.store.consume_verification(record.id, now=now)
                if consumed is None:
                    record = self.store.get_verification(record.id)
                    continue
                self.audit.emit(
                    AuditEvent.VERIFICATION_CONSUMED,
                    account_id=account_id,
                    purpose=purpose.value,
                    record_id=record.id,
                )
                return True

            updated = self.store.increment_verification_attempts(record.id, now=now)
            if updated is None:
                record = self.store.get_verification(record.id)
                continue
            remaining = max(0, updated.max_attempts - updated.attempts)
            logger.info(
                "verification_mismatch",
                account_id=account_id,
                purpose=purpose.value,
                attempts=updated.attempts,
            )
            raise VerificationMismatch(
                "verification code does not match", attempts_remaining=remaining
            )
        # A record that stays pending while every conditional update misses
        raise VerificationAttemptsExhausted("verification could not be completed")

    @staticmethod
    def _ensure_pending(
        record: Optional[VerificationRecord], now: datetime
    ) -> VerificationRecord:
        """Return ``record`` if a code may still be checked against it.

        A code consumed by a successful check reports ``AlreadyUsed`` at any
        age. A record voided by a resend or retired by cleanup reports
        ``Expired`` once past its expiry and ``AlreadyUsed`` before that.
        """
        if record is None:
            raise VerificationNotFound("no verification code has been issued")
        if record.used and not record.superseded:
            raise VerificationAlreadyUsed("verification code has already been used")
        if now > record.expires_at:
            raise VerificationExpired("verification code has expired")
        if record.used:
            raise VerificationAlreadyUsed("verification code has been replaced")
        if record.attempts >= record.max_attempts:
            raise VerificationAttemptsExhausted(
                "too many verification attempts; request a new code"
            )
        return record

    def cleanup_expired(self) -> int:
        count = self.store.retire_expired_verifications(now=self._now())
        if count:
            logger.info("expired_verifications_retired", count=count)
        return count
