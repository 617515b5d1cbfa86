from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from rideauth.logging import get_logger
from rideauth.storage.errors import ConstraintViolation
from rideauth.storage.models import (
    Account,
    Credential,
    Purpose,
    Role,
    Session,
    VerificationRecord,
    utcnow,
)


class MemoryStore:
    """Thread-safe in-memory backing store.

    Every read-modify-write runs inside ``_data_lock`` so the atomic
    primitives (failure counter increment, verification attempt update,
    conditional session update) behave like single-row conditional updates
    in the relational store. When ``fs_root`` is given the state is written
    to a JSON snapshot after each mutation and reloaded on start.

    Returned objects are copies; callers never mutate stored state directly.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, Credential] = {}
        self.sessions: Dict[str, Session] = {}
        self.verifications: Dict[str, VerificationRecord] = {}
        # RLock so helpers can be called while the lock is held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # Accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        phone: Optional[str] = None,
        role: Role | str = Role.PASSENGER,
    ) -> Account:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(a.email == normalized_email for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and any(a.phone == phone for a in self.accounts.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized_email,
                phone=phone,
                role=Role(role),
            )
            self.accounts[account.id] = account
            self.credentials[account.id] = Credential(
                account_id=account.id, password_hash=password_hash
            )
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return replace(account)
        return None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.phone and account.phone == phone:
                    return replace(account)
        return None

    def mark_contact_verified(
        self, account_id: str, purpose: Purpose | str
    ) -> Optional[Account]:
        channel = Purpose(purpose)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if channel is Purpose.EMAIL:
                account.email_verified = True
            elif channel is Purpose.SMS:
                account.phone_verified = True
            else:
                raise ValueError(f"{channel.value} does not verify a contact channel")
            self._persist_state()
            return replace(account)

    # Credentials --------------------------------------------------------

    def get_credential(self, account_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(account_id)
            return replace(cred) if cred else None

    def set_password_hash(self, account_id: str, password_hash: str, *, now: datetime) -> None:
        with self._data_lock:
            cred = self.credentials.get(account_id)
            if not cred:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            cred.password_hash = password_hash
            cred.updated_at = now
            self._persist_state()

    def increment_failed_attempts(
        self,
        account_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[Credential]:
        """Atomically count one failed login and lock once ``threshold`` is hit.

        A lock whose window has passed is cleared first, so the failure starts
        a new streak at 1. An active lock is never extended.
        """
        with self._data_lock:
            cred = self.credentials.get(account_id)
            if not cred:
                return None
            if cred.locked_until is not None and cred.locked_until <= now:
                cred.failed_attempts = 0
                cred.locked_until = None
            cred.failed_attempts += 1
            if cred.failed_attempts >= threshold and cred.locked_until is None:
                cred.locked_until = lock_until
            cred.updated_at = now
            self._persist_state()
            return replace(cred)

    def reset_failed_attempts(self, account_id: str, *, now: datetime) -> None:
        with self._data_lock:
            cred = self.credentials.get(account_id)
            if not cred:
                return
            if cred.failed_attempts == 0 and cred.locked_until is None:
                return
            cred.failed_attempts = 0
            cred.locked_until = None
            cred.updated_at = now
            self._persist_state()

    # Sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def find_session_by_access_fp(self, access_fp: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.access_fp == access_fp:
                    return replace(sess)
        return None

    def find_session_by_refresh_fp(self, refresh_fp: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_fp == refresh_fp:
                    return replace(sess)
        return None

    def update_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_fp: str,
        now: datetime,
        access_fp: str,
        access_expires_at: datetime,
        refresh_fp: Optional[str] = None,
        refresh_expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Swap token fingerprints if the session is still refreshable.

        Returns ``None`` when the session is gone, inactive, past its refresh
        expiry, or no longer carries ``expected_refresh_fp``.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or not sess.refreshable(now)
                or sess.refresh_fp != expected_refresh_fp
            ):
                return None
            sess.access_fp = access_fp
            sess.access_expires_at = access_expires_at
            sess.last_activity_at = now
            if refresh_fp is not None:
                sess.refresh_fp = refresh_fp
            if refresh_expires_at is not None:
                sess.refresh_expires_at = refresh_expires_at
            self._persist_state()
            return replace(sess)

    def touch_session(self, session_id: str, *, now: datetime) -> Optional[Session]:
        """Record activity on a session that is still usable."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.usable(now):
                return None
            sess.last_activity_at = now
            self._persist_state()
            return replace(sess)

    def deactivate_sessions_by_fingerprint(self, fingerprint: str, *, now: datetime) -> List[Session]:
        with self._data_lock:
            ended = []
            for sess in self.sessions.values():
                if not sess.active:
                    continue
                if sess.access_fp == fingerprint or sess.refresh_fp == fingerprint:
                    self._end_session(sess, now)
                    ended.append(replace(sess))
            if ended:
                self._persist_state()
            return ended

    def deactivate_account_sessions(self, account_id: str, *, now: datetime) -> List[Session]:
        with self._data_lock:
            ended = []
            for sess in self.sessions.values():
                if sess.account_id == account_id and sess.active:
                    self._end_session(sess, now)
                    ended.append(replace(sess))
            if ended:
                self._persist_state()
            return ended

    def deactivate_expired_sessions(self, *, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if (
                    sess.active
                    and sess.access_expires_at <= now
                    and sess.refresh_expires_at <= now
                ):
                    self._end_session(sess, now)
                    count += 1
            if count:
                self._persist_state()
            return count

    def list_sessions(self, account_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            sessions = [
                replace(s)
                for s in self.sessions.values()
                if s.account_id == account_id and (s.active or not active_only)
            ]
        sessions.sort(key=lambda s: s.issued_at, reverse=True)
        return sessions

    @staticmethod
    def _end_session(sess: Session, now: datetime) -> None:
        sess.active = False
        sess.ended_at = now

    # Verification records ----------------------------------------------

    def create_verification(self, record: VerificationRecord) -> VerificationRecord:
        with self._data_lock:
            if record.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": record.account_id}
                )
            self.verifications[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def latest_verification(
        self, account_id: str, purpose: Purpose | str
    ) -> Optional[VerificationRecord]:
        wanted = Purpose(purpose)
        with self._data_lock:
            latest: Optional[VerificationRecord] = None
            # Insertion order breaks ties between records created in the same instant
            for record in self.verifications.values():
                if record.account_id != account_id or record.purpose is not wanted:
                    continue
                if latest is None or record.created_at >= latest.created_at:
                    latest = record
            return replace(latest) if latest else None

    def get_verification(self, record_id: str) -> Optional[VerificationRecord]:
        with self._data_lock:
            record = self.verifications.get(record_id)
            return replace(record) if record else None

    def supersede_verifications(self, account_id: str, purpose: Purpose | str) -> int:
        wanted = Purpose(purpose)
        with self._data_lock:
            count = 0
            for record in self.verifications.values():
                if (
                    record.account_id == account_id
                    and record.purpose is wanted
                    and not record.used
                ):
                    record.used = True
                    record.superseded = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def consume_verification(
        self, record_id: str, *, now: datetime
    ) -> Optional[VerificationRecord]:
        """Mark a pending record used; ``None`` if it stopped being pending."""
        with self._data_lock:
            record = self.verifications.get(record_id)
            if not record or not self._pending(record, now):
                return None
            record.used = True
            record.used_at = now
            self._persist_state()
            return replace(record)

    def increment_verification_attempts(
        self, record_id: str, *, now: datetime
    ) -> Optional[VerificationRecord]:
        with self._data_lock:
            record = self.verifications.get(record_id)
            if not record or not self._pending(record, now):
                return None
            record.attempts += 1
            self._persist_state()
            return replace(record)

    def retire_expired_verifications(self, *, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.verifications.values():
                if not record.used and record.expires_at < now:
                    record.used = True
                    record.superseded = True
                    count += 1
            if count:
                self._persist_state()
            return count

    @staticmethod
    def _pending(record: VerificationRecord, now: datetime) -> bool:
        return (
            not record.used
            and now <= record.expires_at
            and record.attempts < record.max_attempts
        )

    # Persistence --------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "verifications": [
                self._serialize_verification(v) for v in self.verifications.values()
            ],
        }
        path = self._state_path()
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            c["account_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.verifications = {
            v["id"]: self._deserialize_verification(v)
            for v in data.get("verifications", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "phone": account.phone,
            "role": account.role.value,
            "email_verified": account.email_verified,
            "phone_verified": account.phone_verified,
            "is_active": account.is_active,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            phone=data.get("phone"),
            role=Role(data.get("role", Role.PASSENGER.value)),
            email_verified=data.get("email_verified", False),
            phone_verified=data.get("phone_verified", False),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_credential(self, cred: Credential) -> dict:
        return {
            "account_id": cred.account_id,
            "password_hash": cred.password_hash,
            "failed_attempts": cred.failed_attempts,
            "locked_until": self._serialize_datetime(cred.locked_until),
            "updated_at": self._serialize_datetime(cred.updated_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            account_id=data["account_id"],
            password_hash=data["password_hash"],
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "account_id": sess.account_id,
            "access_fp": sess.access_fp,
            "refresh_fp": sess.refresh_fp,
            "issued_at": self._serialize_datetime(sess.issued_at),
            "access_expires_at": self._serialize_datetime(sess.access_expires_at),
            "refresh_expires_at": self._serialize_datetime(sess.refresh_expires_at),
            "last_activity_at": self._serialize_datetime(sess.last_activity_at),
            "role": sess.role.value,
            "verified": sess.verified,
            "device": sess.device,
            "client_address": sess.client_address,
            "active": sess.active,
            "ended_at": self._serialize_datetime(sess.ended_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            access_fp=data["access_fp"],
            refresh_fp=data["refresh_fp"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            access_expires_at=self._deserialize_datetime(data["access_expires_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            role=Role(data.get("role", Role.PASSENGER.value)),
            verified=data.get("verified", False),
            device=data.get("device"),
            client_address=data.get("client_address"),
            active=data.get("active", True),
            ended_at=self._deserialize_datetime(data.get("ended_at")),
        )

    def _serialize_verification(self, record: VerificationRecord) -> dict:
        return {
            "id": record.id,
            "account_id": record.account_id,
            "purpose": record.purpose.value,
            "code": record.code,
            "token_hash": record.token_hash,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "attempts": record.attempts,
            "max_attempts": record.max_attempts,
            "used": record.used,
            "used_at": self._serialize_datetime(record.used_at),
            "superseded": record.superseded,
        }

    def _deserialize_verification(self, data: dict) -> VerificationRecord:
        return VerificationRecord(
            id=data["id"],
            account_id=data["account_id"],
            purpose=Purpose(data["purpose"]),
            code=data["code"],
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            used=data.get("used", False),
            used_at=self._deserialize_datetime(data.get("used_at")),
            superseded=data.get("superseded", False),
        )
