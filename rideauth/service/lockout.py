from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from rideauth.logging import get_logger
from rideauth.service.audit import AuditEvent, AuditSink, LoggingAuditSink

logger = get_logger(__name__)


class LoginAttemptGovernor:
    """Consecutive-failure counter with timed lockout per account.

    ``Unlocked -> Unlocked[n] -> Locked(until) -> Unlocked``. The counter
    lives on the credential row and is only touched through the store's
    atomic increment, so concurrent failures cannot undercount.
    """

    def __init__(
        self,
        store,
        *,
        max_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=15),
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = lockout
        self.audit = audit or LoggingAuditSink()
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def record_failure(self, account_id: str) -> int:
        """Count a failed login and return the new consecutive-failure total."""
        now = self._now()
        cred = self.store.increment_failed_attempts(
            account_id,
            now=now,
            threshold=self.max_attempts,
            lock_until=now + self.lockout,
        )
        if cred is None:
            logger.warning("lockout_credential_missing", account_id=account_id)
            return 0
        # Only the failure that crossed the threshold applied the lock
        if cred.failed_attempts == self.max_attempts and cred.locked_until is not None:
            logger.warning(
                "account_locked",
                account_id=account_id,
                failed_attempts=cred.failed_attempts,
                locked_until=cred.locked_until.isoformat(),
            )
            self.audit.emit(
                AuditEvent.ACCOUNT_LOCKED,
                account_id=account_id,
                locked_until=cred.locked_until.isoformat(),
            )
        return cred.failed_attempts

    def record_success(self, account_id: str) -> None:
        self.store.reset_failed_attempts(account_id, now=self._now())

    def locked_until(self, account_id: str) -> Optional[datetime]:
        cred = self.store.get_credential(account_id)
        if cred is None or not cred.is_locked(self._now()):
            return None
        return cred.locked_until

    def is_locked(self, account_id: str) -> bool:
        return self.locked_until(account_id) is not None
