from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from rideauth.logging import get_logger
from rideauth.service.audit import AuditEvent, AuditSink, LoggingAuditSink
from rideauth.service.errors import (
    SessionInvalid,
    TokenInvalid,
    Unauthenticated,
)
from rideauth.service.tokens import ACCESS, REFRESH, TokenIssuer, fingerprint
from rideauth.storage.models import Role, Session

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    session_id: str


@dataclass(frozen=True)
class RefreshedAccess:
    access_token: str
    access_expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None


@dataclass(frozen=True)
class AuthenticationResult:
    account_id: str
    role: str
    verified: bool
    session_id: str


class SessionRegistry:
    """Persisted login sessions and the token material bound to them.

    A session is authoritative over its tokens: a token that still verifies
    is rejected once its session is inactive or past the matching expiry.
    Only SHA-256 fingerprints of tokens are stored.
    """

    def __init__(
        self,
        store,
        issuer: TokenIssuer,
        *,
        max_active_sessions: int = 5,
        rotate_refresh_tokens: bool = False,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.max_active_sessions = max_active_sessions
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.audit = audit or LoggingAuditSink()
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def create_session(
        self,
        account_id: str,
        role: Role | str,
        verified: bool,
        *,
        device: Optional[str] = None,
        client_address: Optional[str] = None,
    ) -> SessionTokens:
        role = Role(role)
        access = self.issuer.issue_access_token(account_id, role.value, verified)
        refresh = self.issuer.issue_refresh_token(account_id)
        # Stored expiries match the ones signed into the tokens
        session = Session.new(
            account_id,
            fingerprint(access.token),
            fingerprint(refresh.token),
            now=access.issued_at,
            access_ttl=access.expires_at - access.issued_at,
            refresh_ttl=refresh.expires_at - access.issued_at,
            role=role,
            verified=verified,
            device=device,
            client_address=client_address,
        )
        self.store.create_session(session)

        active = len(self.store.list_sessions(account_id, active_only=True))
        if active > self.max_active_sessions:
            # Advisory ceiling: logged for operators, never enforced here
            logger.warning(
                "active_session_limit_exceeded",
                account_id=account_id,
                active_sessions=active,
                limit=self.max_active_sessions,
            )
        logger.info("session_created", account_id=account_id, session_id=session.id, device=device)
        return SessionTokens(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_in=access.expires_in,
            refresh_expires_in=refresh.expires_in,
            session_id=session.id,
        )

    def refresh_access_token(self, refresh_token: str) -> RefreshedAccess:
        claims = self.issuer.verify(refresh_token)
        if claims.get("token_type") != REFRESH:
            raise TokenInvalid("refresh token required")

        now = self._now()
        refresh_fp = fingerprint(refresh_token)
        session = self.store.find_session_by_refresh_fp(refresh_fp)
        if session is None or not session.refreshable(now):
            raise SessionInvalid()
        if claims.get("sub") != session.account_id:
            logger.warning("refresh_subject_mismatch", session_id=session.id)
            raise SessionInvalid()

        role, verified = self._current_flags(session)
        access = self.issuer.issue_access_token(session.account_id, role, verified)
        rotated = self.issuer.issue_refresh_token(session.account_id) if self.rotate_refresh_tokens else None

        updated = self.store.update_session_tokens(
            session.id,
            expected_refresh_fp=refresh_fp,
            now=now,
            access_fp=fingerprint(access.token),
            access_expires_at=access.expires_at,
            refresh_fp=fingerprint(rotated.token) if rotated else None,
            refresh_expires_at=rotated.expires_at if rotated else None,
        )
        if updated is None:
            # Lost a race with logout, expiry or a concurrent rotation
            raise SessionInvalid()

        logger.info("access_token_refreshed", session_id=session.id, rotated=rotated is not None)
        return RefreshedAccess(
            access_token=access.token,
            access_expires_in=access.expires_in,
            refresh_token=rotated.token if rotated else None,
            refresh_expires_in=rotated.expires_in if rotated else None,
        )

    def invalidate_session(self, token: str, *, reason: str = "logout") -> bool:
        """Deactivate the session bound to an access or refresh token.

        Idempotent: an unknown or already inactive token still returns True.
        """
        if not token:
            return True
        ended = self.store.deactivate_sessions_by_fingerprint(
            fingerprint(token), now=self._now()
        )
        for session in ended:
            self._emit_invalidated(session, reason)
        return True

    def invalidate_all(self, account_id: str, *, reason: str = "revoke_all") -> int:
        ended = self.store.deactivate_account_sessions(account_id, now=self._now())
        for session in ended:
            self._emit_invalidated(session, reason)
        if ended:
            logger.info("account_sessions_invalidated", account_id=account_id, count=len(ended), reason=reason)
        return len(ended)

    def authenticate(self, access_token: Optional[str]) -> AuthenticationResult:
        if not access_token:
            raise Unauthenticated("access token required")
        try:
            claims = self.issuer.verify(access_token)
        except TokenInvalid as exc:
            raise Unauthenticated(exc.message) from exc
        if claims.get("token_type") != ACCESS:
            raise Unauthenticated("access token required")

        now = self._now()
        session = self.store.find_session_by_access_fp(fingerprint(access_token))
        if session is None or not session.usable(now):
            raise SessionInvalid()
        touched = self.store.touch_session(session.id, now=now)
        if touched is None:
            raise SessionInvalid()

        role, verified = self._current_flags(session, claims)
        return AuthenticationResult(
            account_id=session.account_id,
            role=role,
            verified=verified,
            session_id=session.id,
        )

    def authenticate_header(self, authorization: Optional[str]) -> AuthenticationResult:
        """Authenticate an ``Authorization: Bearer <token>`` header value."""
        if not authorization:
            raise Unauthenticated("access token required")
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthenticated("bearer token required")
        return self.authenticate(token.strip())

    def list_active_sessions(self, account_id: str) -> List[Session]:
        now = self._now()
        return [s for s in self.store.list_sessions(account_id, active_only=True) if s.refreshable(now)]

    def cleanup_expired(self) -> int:
        count = self.store.deactivate_expired_sessions(now=self._now())
        if count:
            logger.info("expired_sessions_cleaned", count=count)
        return count

    def _current_flags(self, session: Session, claims: Optional[dict[str, Any]] = None) -> tuple[str, bool]:
        account = self.store.get_account(session.account_id)
        if account is not None:
            if not account.is_active:
                raise SessionInvalid("account is deactivated")
            return account.role.value, account.verified
        if claims is not None:
            return str(claims.get("role", session.role.value)), bool(claims.get("verified", session.verified))
        return session.role.value, session.verified

    def _emit_invalidated(self, session: Session, reason: str) -> None:
        self.audit.emit(
            AuditEvent.SESSION_INVALIDATED,
            account_id=session.account_id,
            session_id=session.id,
            reason=reason,
        )
