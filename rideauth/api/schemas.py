from __future__ import annotations

from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from rideauth.storage.models import Purpose, Role

# Upper bound for identifiers and codes echoed into logs and queries
MAX_IDENTIFIER_LENGTH = 320
# Passwords are policy-checked by the service; this only bounds payload size
MAX_SECRET_LENGTH = 1024


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    phone: Optional[str] = Field(None, max_length=32)
    role: Role = Role.PASSENGER
    name: Optional[str] = Field(None, max_length=120)

    @field_validator("role")
    @classmethod
    def _no_self_service_admin(cls, value: Role) -> Role:
        if value is Role.ADMIN:
            raise ValueError("admin accounts cannot self-register")
        return value


class LoginRequest(BaseModel):
    identifier: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    device: Optional[str] = Field(None, max_length=200)


class TwoFactorRequest(BaseModel):
    account_id: UUID
    challenge: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., max_length=16)
    device: Optional[str] = Field(None, max_length=200)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    token: Optional[str] = Field(None, max_length=4096)


class ConfirmContactRequest(BaseModel):
    purpose: Purpose = Purpose.EMAIL
    code: str = Field(..., max_length=16)


class ResendRequest(BaseModel):
    purpose: Purpose = Purpose.EMAIL


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)


class PasswordResetConfirm(BaseModel):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    code: str = Field(..., max_length=16)
    new_password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    new_password: str = Field(..., max_length=MAX_SECRET_LENGTH)
