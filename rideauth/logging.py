from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "rideauth"

# Request or maintenance-run identifier attached to every log line
_correlation_id: ContextVar[Optional[str]] = ContextVar("rideauth_correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def _stamp_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = _correlation_id.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Key fragments whose values never reach log output in full
_SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "otp",
    "authorization",
    "email",
    "phone",
    "hash",
)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered == "code" or any(marker in lowered for marker in _SENSITIVE_KEYS)


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, codes and contact addresses in log entries.

    Verification codes are short, so anything at or under eight characters is
    masked entirely; longer values keep their first and last two characters.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str) or not _is_sensitive(key):
            continue
        event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 8 else "***"
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline used by every ``get_logger`` caller.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines when True, colored console output otherwise
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_context,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def redact_email(email: str) -> str:
    """Mask the local part of an address: ``jane@example.com`` -> ``j***@example.com``."""
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def redact_phone(phone_number: str) -> str:
    digits = phone_number.strip()
    if len(digits) <= 4:
        return "***"
    return "***" + digits[-4:]
