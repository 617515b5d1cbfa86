from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from rideauth.api.dependencies import client_address, rate_limited, require_auth
from rideauth.api.schemas import (
    ConfirmContactRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    ResendRequest,
    TwoFactorRequest,
)
from rideauth.config import EndpointClass
from rideauth.service.auth import CodeDispatch, LoginResult
from rideauth.service.errors import Unauthenticated
from rideauth.service.runtime import get_runtime
from rideauth.service.sessions import AuthenticationResult
from rideauth.storage.models import Account, Session, role_profile

router = APIRouter(prefix="/v1")


def _account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "phone": account.phone,
        "role": account.role.value,
        "email_verified": account.email_verified,
        "phone_verified": account.phone_verified,
        "verified": account.verified,
        "created_at": account.created_at,
    }


def _dispatch_to_dict(dispatch: CodeDispatch) -> Dict[str, Any]:
    return {
        "purpose": dispatch.purpose.value,
        "expires_at": dispatch.expires_at,
        "email_sent": dispatch.delivery.email_sent,
        "sms_sent": dispatch.delivery.sms_sent,
    }


def _login_to_dict(result: LoginResult) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "account_id": result.account_id,
        "role": result.role,
        "verified": result.verified,
        "two_factor_required": result.two_factor_required,
    }
    if result.two_factor is not None:
        data["two_factor"] = _dispatch_to_dict(result.two_factor)
    if result.challenge is not None:
        data["challenge"] = result.challenge
    if result.tokens is not None:
        data.update(
            session_id=result.tokens.session_id,
            token_type="Bearer",
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.access_expires_in,
            refresh_expires_in=result.tokens.refresh_expires_in,
        )
    return data


def _session_to_dict(session: Session, current_session_id: str) -> Dict[str, Any]:
    return {
        "id": session.id,
        "device": session.device,
        "client_address": session.client_address,
        "issued_at": session.issued_at,
        "last_activity_at": session.last_activity_at,
        "access_expires_at": session.access_expires_at,
        "refresh_expires_at": session.refresh_expires_at,
        "current": session.id == current_session_id,
    }


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limited(EndpointClass.AUTH))],
)
def register(body: RegisterRequest):
    """Create a passenger or driver account and send an email verification code."""
    result = get_runtime().auth.register(
        body.email, body.password, phone=body.phone, role=body.role, name=body.name
    )
    return Envelope(
        status="ok",
        data={
            "account": _account_to_dict(result.account),
            "verification": _dispatch_to_dict(result.verification),
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request):
    """Authenticate by email or phone number and password.

    Raises:
        401: Unknown account or wrong password
        423: Account locked after repeated failures
        429: Too many attempts from this client
    """
    result = get_runtime().auth.login(
        body.identifier,
        body.password,
        device=body.device,
        client_address=client_address(request),
    )
    return Envelope(status="ok", data=_login_to_dict(result))


@router.post("/auth/two-factor", response_model=Envelope, tags=["auth"])
def complete_two_factor(body: TwoFactorRequest, request: Request):
    """Finish an admin login with the login challenge and the delivered code.

    Raises:
        401: Unknown account or a challenge from no current login
        423: Account locked
    """
    result = get_runtime().auth.complete_two_factor(
        str(body.account_id),
        body.challenge,
        body.code,
        device=body.device,
        client_address=client_address(request),
    )
    return Envelope(status="ok", data=_login_to_dict(result))


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited(EndpointClass.GENERAL))],
)
def refresh(body: RefreshRequest):
    refreshed = get_runtime().auth.refresh(body.refresh_token)
    data: Dict[str, Any] = {
        "token_type": "Bearer",
        "access_token": refreshed.access_token,
        "expires_in": refreshed.access_expires_in,
    }
    if refreshed.refresh_token is not None:
        data["refresh_token"] = refreshed.refresh_token
        data["refresh_expires_in"] = refreshed.refresh_expires_in
    return Envelope(status="ok", data=data)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """End the session bound to the supplied token; repeating it is harmless."""
    token = (body.token if body else None) or _bearer(authorization)
    if not token:
        raise Unauthenticated("missing token")
    get_runtime().auth.logout(token)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
def logout_all(principal: AuthenticationResult = Depends(require_auth)):
    ended = get_runtime().sessions.invalidate_all(principal.account_id)
    return Envelope(status="ok", data={"sessions_ended": ended})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def me(principal: AuthenticationResult = Depends(require_auth)):
    return Envelope(
        status="ok",
        data={
            "account_id": principal.account_id,
            "role": principal.role,
            "verified": principal.verified,
            "session_id": principal.session_id,
            "capabilities": sorted(role_profile(principal.role).capabilities),
        },
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
def list_sessions(principal: AuthenticationResult = Depends(require_auth)):
    sessions = get_runtime().sessions.list_active_sessions(principal.account_id)
    return Envelope(
        status="ok",
        data=[_session_to_dict(session, principal.session_id) for session in sessions],
    )


@router.post("/auth/verify", response_model=Envelope, tags=["verification"])
def confirm_contact(
    body: ConfirmContactRequest,
    request: Request,
    principal: AuthenticationResult = Depends(require_auth),
):
    account = get_runtime().auth.confirm_contact(
        principal.account_id,
        body.purpose,
        body.code,
        client_address=client_address(request),
    )
    return Envelope(status="ok", data=_account_to_dict(account))


@router.post("/auth/verify/resend", response_model=Envelope, tags=["verification"])
def resend_verification(
    body: ResendRequest,
    request: Request,
    principal: AuthenticationResult = Depends(require_auth),
):
    dispatch = get_runtime().auth.resend_verification(
        principal.account_id, body.purpose, client_address=client_address(request)
    )
    return Envelope(status="ok", data=_dispatch_to_dict(dispatch))


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
def request_password_reset(body: PasswordResetRequest, request: Request):
    get_runtime().auth.request_password_reset(
        body.email, client_address=client_address(request)
    )
    # Same response whether or not the address is registered
    return Envelope(status="ok", data={"requested": True})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
def complete_password_reset(body: PasswordResetConfirm, request: Request):
    ended = get_runtime().auth.complete_password_reset(
        body.email,
        body.code,
        body.new_password,
        client_address=client_address(request),
    )
    return Envelope(status="ok", data={"reset": True, "sessions_ended": ended})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
def change_password(
    body: PasswordChangeRequest,
    principal: AuthenticationResult = Depends(require_auth),
):
    ended = get_runtime().auth.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"changed": True, "sessions_ended": ended})
