from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from rideauth.logging import get_logger


class AuditEvent(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    SESSION_INVALIDATED = "session_invalidated"
    VERIFICATION_ISSUED = "verification_issued"
    VERIFICATION_CONSUMED = "verification_consumed"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"


class AuditSink(Protocol):
    """Receiver for security events; storage and schema are owned elsewhere."""

    def emit(self, event: AuditEvent | str, **fields: Any) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the structured log under the ``audit`` category."""

    def __init__(self, logger_name: str = "rideauth.audit") -> None:
        self.logger = get_logger(logger_name)

    def emit(self, event: AuditEvent | str, **fields: Any) -> None:
        name = event.value if isinstance(event, AuditEvent) else str(event)
        self.logger.info(name, category="audit", **fields)
