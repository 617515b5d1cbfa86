from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from rideauth.config import EndpointClass, Settings
from rideauth.logging import get_logger, redact_email
from rideauth.service.audit import AuditEvent, AuditSink, LoggingAuditSink
from rideauth.service.delivery import CodeDelivery, DeliveryReport
from rideauth.service.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidInput,
    ResendCooldown,
    VerificationNotFound,
)
from rideauth.service.lockout import LoginAttemptGovernor
from rideauth.service.passwords import PasswordHasherService, validate_password_strength
from rideauth.service.rate_limit import RateLimiter
from rideauth.service.sessions import (
    AuthenticationResult,
    RefreshedAccess,
    SessionRegistry,
    SessionTokens,
)
from rideauth.service.verification import IssuedCode, VerificationCodeEngine
from rideauth.storage.errors import ConstraintViolation
from rideauth.storage.models import Account, Purpose, Role, role_profile

logger = get_logger(__name__)

_CONTACT_PURPOSES = (Purpose.EMAIL, Purpose.SMS)


@dataclass(frozen=True)
class CodeDispatch:
    purpose: Purpose
    expires_at: datetime
    delivery: DeliveryReport


@dataclass(frozen=True)
class RegistrationResult:
    account: Account
    verification: CodeDispatch


@dataclass(frozen=True)
class LoginResult:
    account_id: str
    role: str
    verified: bool
    tokens: Optional[SessionTokens] = None
    two_factor_required: bool = False
    two_factor: Optional[CodeDispatch] = None
    # Handle binding the second factor to this password check
    challenge: Optional[str] = None


class AuthService:
    """Registration, login and credential recovery flows.

    Login runs rate limiter, lockout check, password verification, the
    single ``record_failure``/``record_success`` call, then session
    creation. Unknown accounts and wrong passwords are indistinguishable
    to the caller; an active lockout is disclosed.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        hasher: PasswordHasherService,
        governor: LoginAttemptGovernor,
        sessions: SessionRegistry,
        verifier: VerificationCodeEngine,
        limiter: RateLimiter,
        delivery: CodeDelivery,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.governor = governor
        self.sessions = sessions
        self.verifier = verifier
        self.limiter = limiter
        self.delivery = delivery
        self.audit = audit or LoggingAuditSink()
        self._clock = clock
        # Verified against when the account is unknown so timing matches a real check
        self._dummy_hash = hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # Registration -------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        *,
        phone: Optional[str] = None,
        role: Role | str = Role.PASSENGER,
        name: Optional[str] = None,
    ) -> RegistrationResult:
        email = (email or "").strip().lower()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise InvalidInput("a valid email address is required", detail={"field": "email"})
        try:
            role = Role(role)
        except ValueError:
            raise InvalidInput("unknown role", detail={"field": "role"})
        validate_password_strength(password)

        password_hash = self.hasher.hash(password)
        try:
            account = self.store.create_account(
                email, password_hash, phone=phone, role=role
            )
        except ConstraintViolation as exc:
            raise InvalidInput(
                "an account with these details already exists", detail=exc.detail
            )
        logger.info("account_registered", account_id=account.id, role=account.role.value)

        dispatch = self._dispatch(account, self.verifier.issue(account.id, Purpose.EMAIL), name=name)
        return RegistrationResult(account=account, verification=dispatch)

    # Login --------------------------------------------------------------

    def login(
        self,
        identifier: str,
        password: str,
        *,
        device: Optional[str] = None,
        client_address: Optional[str] = None,
    ) -> LoginResult:
        if client_address:
            self.limiter.enforce(client_address, EndpointClass.AUTH)

        account = self._find_account(identifier)
        if account is None or not account.is_active:
            self.hasher.verify(password or "", self._dummy_hash)
            self.audit.emit(
                AuditEvent.LOGIN_FAILED,
                reason="unknown_account",
                client_address=client_address,
            )
            raise InvalidCredentials()

        locked_until = self.governor.locked_until(account.id)
        if locked_until is not None:
            self.audit.emit(
                AuditEvent.LOGIN_FAILED,
                account_id=account.id,
                reason="account_locked",
                client_address=client_address,
            )
            raise AccountLocked(locked_until)

        credential = self.store.get_credential(account.id)
        if credential is None or not self.hasher.verify(password, credential.password_hash):
            failures = self.governor.record_failure(account.id)
            self.audit.emit(
                AuditEvent.LOGIN_FAILED,
                account_id=account.id,
                reason="bad_password",
                failed_attempts=failures,
                client_address=client_address,
            )
            raise InvalidCredentials()

        self.governor.record_success(account.id)
        if self.hasher.needs_rehash(credential.password_hash):
            self.store.set_password_hash(account.id, self.hasher.hash(password), now=self._now())
            logger.info("password_rehashed", account_id=account.id)
        if client_address:
            self.limiter.refund_if_skippable(client_address, EndpointClass.AUTH)

        if role_profile(account.role).requires_two_factor:
            issued = self.verifier.issue(account.id, Purpose.TWO_FACTOR)
            dispatch = self._dispatch(account, issued)
            logger.info("two_factor_challenge_issued", account_id=account.id)
            return LoginResult(
                account_id=account.id,
                role=account.role.value,
                verified=account.verified,
                two_factor_required=True,
                two_factor=dispatch,
                challenge=issued.opaque_token,
            )

        return self._open_session(account, device=device, client_address=client_address)

    def complete_two_factor(
        self,
        account_id: str,
        challenge: str,
        code: str,
        *,
        device: Optional[str] = None,
        client_address: Optional[str] = None,
    ) -> LoginResult:
        """Finish an admin login with the challenge from :meth:`login` and the sent code.

        The challenge proves the password step passed; without it the code is
        never checked. A lockout imposed after the challenge was issued still
        applies.
        """
        if client_address:
            self.limiter.enforce(client_address, EndpointClass.VERIFICATION)
        account = self.store.get_account(account_id)
        if account is None or not account.is_active:
            raise InvalidCredentials()

        locked_until = self.governor.locked_until(account.id)
        if locked_until is not None:
            self.audit.emit(
                AuditEvent.LOGIN_FAILED,
                account_id=account.id,
                reason="account_locked",
                client_address=client_address,
            )
            raise AccountLocked(locked_until)

        if not self.verifier.matches_token(account.id, Purpose.TWO_FACTOR, challenge):
            self.audit.emit(
                AuditEvent.LOGIN_FAILED,
                account_id=account.id,
                reason="bad_challenge",
                client_address=client_address,
            )
            raise InvalidCredentials()

        self.verifier.verify(account.id, Purpose.TWO_FACTOR, code)
        if client_address:
            self.limiter.refund_if_skippable(client_address, EndpointClass.VERIFICATION)
        return self._open_session(
            account, device=device, client_address=client_address, two_factor=True
        )

    def _open_session(
        self,
        account: Account,
        *,
        device: Optional[str],
        client_address: Optional[str],
        two_factor: bool = False,
    ) -> LoginResult:
        tokens = self.sessions.create_session(
            account.id,
            account.role,
            account.verified,
            device=device,
            client_address=client_address,
        )
        self.audit.emit(
            AuditEvent.LOGIN_SUCCESS,
            account_id=account.id,
            session_id=tokens.session_id,
            two_factor=two_factor,
            client_address=client_address,
        )
        return LoginResult(
            account_id=account.id,
            role=account.role.value,
            verified=account.verified,
            tokens=tokens,
        )

    def logout(self, token: str) -> bool:
        return self.sessions.invalidate_session(token, reason="logout")

    def refresh(self, refresh_token: str) -> RefreshedAccess:
        return self.sessions.refresh_access_token(refresh_token)

    def authenticate(self, access_token: Optional[str]) -> AuthenticationResult:
        return self.sessions.authenticate(access_token)

    # Contact verification ----------------------------------------------

    def confirm_contact(
        self,
        account_id: str,
        purpose: Purpose | str,
        code: str,
        *,
        client_address: Optional[str] = None,
    ) -> Account:
        purpose = self._contact_purpose(purpose)
        if client_address:
            self.limiter.enforce(client_address, EndpointClass.VERIFICATION)
        self.verifier.verify(account_id, purpose, code)
        if client_address:
            self.limiter.refund_if_skippable(client_address, EndpointClass.VERIFICATION)
        account = self.store.mark_contact_verified(account_id, purpose)
        if account is None:
            raise InvalidInput("account not found", detail={"account_id": account_id})
        logger.info(
            "contact_verified",
            account_id=account_id,
            purpose=purpose.value,
            verified=account.verified,
        )
        return account

    def resend_verification(
        self,
        account_id: str,
        purpose: Purpose | str,
        *,
        client_address: Optional[str] = None,
    ) -> CodeDispatch:
        purpose = Purpose(purpose)
        if client_address:
            self.limiter.enforce(client_address, EndpointClass.VERIFICATION)
        account = self.store.get_account(account_id)
        if account is None:
            raise InvalidInput("account not found", detail={"account_id": account_id})
        if purpose is Purpose.SMS and not account.phone:
            raise InvalidInput("account has no phone number", detail={"field": "phone"})
        return self._dispatch(account, self.verifier.resend(account.id, purpose))

    # Password recovery --------------------------------------------------

    def request_password_reset(
        self, email: str, *, client_address: Optional[str] = None
    ) -> None:
        """Send a reset code if the address belongs to an account.

        Returns silently either way so callers cannot probe for accounts.
        """
        if client_address:
            self.limiter.enforce(client_address, EndpointClass.VERIFICATION)
        account = self.store.get_account_by_email(email or "")
        if account is None or not account.is_active:
            logger.info("password_reset_unknown_email", email=redact_email(email or ""))
            return
        try:
            issued = self.verifier.resend(account.id, Purpose.PASSWORD_RESET)
        except ResendCooldown as exc:
            # Cooldown is not disclosed; it would confirm the account exists
            logger.info(
                "password_reset_throttled",
                account_id=account.id,
                retry_after_ms=exc.retry_after_ms,
            )
            return
        self._dispatch(account, issued)
        logger.info("password_reset_requested", account_id=account.id)

    def complete_password_reset(
        self,
        email: str,
        code: str,
        new_password: str,
        *,
        client_address: Optional[str] = None,
    ) -> int:
        """Set a new password with a reset code; returns sessions invalidated."""
        if client_address:
            self.limiter.enforce(client_address, EndpointClass.VERIFICATION)
        account = self.store.get_account_by_email(email or "")
        if account is None:
            raise VerificationNotFound("no verification code has been issued")
        validate_password_strength(new_password)
        self.verifier.verify(account.id, Purpose.PASSWORD_RESET, code)

        self.store.set_password_hash(account.id, self.hasher.hash(new_password), now=self._now())
        self.governor.record_success(account.id)
        ended = self.sessions.invalidate_all(account.id, reason="password_reset")
        self.audit.emit(
            AuditEvent.PASSWORD_RESET_COMPLETED,
            account_id=account.id,
            sessions_invalidated=ended,
        )
        return ended

    def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace a known password; returns the number of sessions invalidated."""
        credential = self.store.get_credential(account_id)
        if credential is None or not self.hasher.verify(
            current_password, credential.password_hash
        ):
            raise InvalidCredentials()
        validate_password_strength(new_password)
        if current_password == new_password:
            raise InvalidInput("new password must differ from the current one")

        self.store.set_password_hash(account_id, self.hasher.hash(new_password), now=self._now())
        ended = self.sessions.invalidate_all(account_id, reason="password_change")
        self.audit.emit(
            AuditEvent.PASSWORD_CHANGED, account_id=account_id, sessions_invalidated=ended
        )
        return ended

    # Helpers ------------------------------------------------------------

    def _find_account(self, identifier: str) -> Optional[Account]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if "@" in identifier:
            return self.store.get_account_by_email(identifier)
        return self.store.get_account_by_phone(identifier)

    @staticmethod
    def _contact_purpose(purpose: Purpose | str) -> Purpose:
        try:
            resolved = Purpose(purpose)
        except ValueError:
            raise InvalidInput("unknown verification purpose", detail={"field": "purpose"})
        if resolved not in _CONTACT_PURPOSES:
            raise InvalidInput(
                "purpose does not verify a contact channel", detail={"field": "purpose"}
            )
        return resolved

    def _dispatch(
        self, account: Account, issued: IssuedCode, *, name: Optional[str] = None
    ) -> CodeDispatch:
        expires_minutes = max(
            1, int((issued.expires_at - self._now()).total_seconds() // 60)
        )
        report = self.delivery.deliver(
            account,
            issued.purpose,
            issued.code,
            expires_minutes=expires_minutes,
            name=name,
        )
        return CodeDispatch(
            purpose=issued.purpose, expires_at=issued.expires_at, delivery=report
        )
