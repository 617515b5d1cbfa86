from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"
    ADMIN = "admin"


class Purpose(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR = "two_factor"


@dataclass(frozen=True)
class RoleProfile:
    """Capabilities attached to a role.

    Login reads ``requires_two_factor``; the capability set is reported to
    the caller by ``/v1/auth/me`` for downstream authorization policy.
    """

    role: Role
    capabilities: FrozenSet[str]
    requires_two_factor: bool = False


ROLE_PROFILES = {
    Role.PASSENGER: RoleProfile(
        Role.PASSENGER,
        frozenset({"ride:request", "ride:cancel", "ride:rate", "wallet:pay"}),
    ),
    Role.DRIVER: RoleProfile(
        Role.DRIVER,
        frozenset({"ride:accept", "ride:complete", "vehicle:manage", "earnings:view"}),
    ),
    Role.ADMIN: RoleProfile(
        Role.ADMIN,
        frozenset({"accounts:manage", "rides:audit", "sessions:revoke"}),
        requires_two_factor=True,
    ),
}


def role_profile(role: Role | str) -> RoleProfile:
    return ROLE_PROFILES[Role(role)]


@dataclass
class Account:
    id: str
    email: str
    phone: Optional[str] = None
    role: Role = Role.PASSENGER
    email_verified: bool = False
    phone_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def verified(self) -> bool:
        return self.email_verified and self.phone_verified


@dataclass
class Credential:
    account_id: str
    password_hash: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class Session:
    id: str
    account_id: str
    access_fp: str
    refresh_fp: str
    issued_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime
    last_activity_at: datetime
    role: Role = Role.PASSENGER
    verified: bool = False
    device: Optional[str] = None
    client_address: Optional[str] = None
    active: bool = True
    ended_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        access_fp: str,
        refresh_fp: str,
        *,
        now: datetime,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        role: Role = Role.PASSENGER,
        verified: bool = False,
        device: str | None = None,
        client_address: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            access_fp=access_fp,
            refresh_fp=refresh_fp,
            issued_at=now,
            access_expires_at=now + access_ttl,
            refresh_expires_at=now + refresh_ttl,
            last_activity_at=now,
            role=Role(role),
            verified=verified,
            device=device,
            client_address=client_address,
        )

    def usable(self, now: datetime) -> bool:
        return self.active and now < self.access_expires_at

    def refreshable(self, now: datetime) -> bool:
        return self.active and now < self.refresh_expires_at


@dataclass
class VerificationRecord:
    id: str
    account_id: str
    purpose: Purpose
    code: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    used: bool = False
    used_at: Optional[datetime] = None
    superseded: bool = False

    @classmethod
    def new(
        cls,
        account_id: str,
        purpose: Purpose | str,
        code: str,
        token_hash: str,
        *,
        now: datetime,
        ttl: timedelta,
        max_attempts: int,
    ) -> "VerificationRecord":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            purpose=Purpose(purpose),
            code=code,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + ttl,
            max_attempts=max_attempts,
        )
