from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from rideauth.logging import get_logger
from rideauth.storage.errors import ConstraintViolation, StoreUnavailable
from rideauth.storage.models import (
    Account,
    Credential,
    Purpose,
    Role,
    Session,
    VerificationRecord,
)

_SESSION_COLUMNS = (
    "id, account_id, access_fp, refresh_fp, device, client_address, issued_at, "
    "access_expires_at, refresh_expires_at, last_activity_at, active, ended_at, "
    "role, verified"
)

_VERIFICATION_COLUMNS = (
    "id, account_id, purpose, code, token_hash, created_at, expires_at, attempts, "
    "max_attempts, used, used_at, superseded"
)

# A record still accepts guesses while unused, unexpired and under its limit
_PENDING_VERIFICATION = (
    "NOT used AND expires_at >= %(now)s AND attempts < max_attempts"
)


class PostgresStore:
    """Postgres-backed store for accounts, credentials, sessions and codes.

    The atomic primitives are single conditional ``UPDATE ... RETURNING``
    statements so concurrent callers serialize on the row lock. Connection
    and pool failures surface as :class:`StoreUnavailable`.
    """

    required_tables = ("accounts", "credentials", "sessions", "verification_records")

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, errors.InterfaceError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _fetch_one(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        """Single-row lookup keyed by a UUID column; a malformed key finds nothing."""
        try:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchone()
        except errors.DataError as exc:
            self.logger.info("postgres_lookup_malformed_key", error=str(exc))
            return None

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in self.required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply rideauth/storage/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # Accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        phone: Optional[str] = None,
        role: Role | str = Role.PASSENGER,
    ) -> Account:
        account = Account(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            phone=phone,
            role=Role(role),
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO accounts (id, email, phone, role, email_verified, phone_verified, is_active, created_at)
                        VALUES (%s, %s, %s, %s, FALSE, FALSE, TRUE, %s)
                        """,
                        (
                            account.id,
                            account.email,
                            account.phone,
                            account.role.value,
                            account.created_at,
                        ),
                    )
                    conn.execute(
                        """
                        INSERT INTO credentials (account_id, password_hash, failed_attempts, locked_until, updated_at)
                        VALUES (%s, %s, 0, NULL, %s)
                        """,
                        (account.id, password_hash, account.created_at),
                    )
        except errors.UniqueViolation as exc:
            field = "phone" if "phone" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        row = self._fetch_one("SELECT * FROM accounts WHERE id = %s", (account_id,))
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE phone = %s", (phone,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def mark_contact_verified(
        self, account_id: str, purpose: Purpose | str
    ) -> Optional[Account]:
        channel = Purpose(purpose)
        if channel is Purpose.EMAIL:
            column = "email_verified"
        elif channel is Purpose.SMS:
            column = "phone_verified"
        else:
            raise ValueError(f"{channel.value} does not verify a contact channel")
        row = self._fetch_one(
            f"UPDATE accounts SET {column} = TRUE WHERE id = %s RETURNING *", (account_id,)
        )
        return self._account_from_row(row) if row else None

    # Credentials --------------------------------------------------------

    def get_credential(self, account_id: str) -> Optional[Credential]:
        row = self._fetch_one(
            "SELECT * FROM credentials WHERE account_id = %s", (account_id,)
        )
        return self._credential_from_row(row) if row else None

    def set_password_hash(self, account_id: str, password_hash: str, *, now: datetime) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE credentials SET password_hash = %s, updated_at = %s WHERE account_id = %s",
                (password_hash, now, account_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )

    def increment_failed_attempts(
        self,
        account_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[Credential]:
        params = {
            "account_id": account_id,
            "now": now,
            "threshold": threshold,
            "lock_until": lock_until,
        }
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE credentials SET
                    failed_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN locked_until IS NOT NULL AND locked_until > %(now)s THEN locked_until
                        WHEN (CASE
                                WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                                ELSE failed_attempts + 1
                              END) >= %(threshold)s THEN %(lock_until)s
                        ELSE NULL
                    END,
                    updated_at = %(now)s
                WHERE account_id = %(account_id)s
                RETURNING *
                """,
                params,
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def reset_failed_attempts(self, account_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE credentials SET failed_attempts = 0, locked_until = NULL, updated_at = %s
                WHERE account_id = %s AND (failed_attempts <> 0 OR locked_until IS NOT NULL)
                """,
                (now, account_id),
            )

    # Sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO sessions ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.access_fp,
                        session.refresh_fp,
                        session.device,
                        session.client_address,
                        session.issued_at,
                        session.access_expires_at,
                        session.refresh_expires_at,
                        session.last_activity_at,
                        session.active,
                        session.ended_at,
                        session.role.value,
                        session.verified,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": session.account_id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._fetch_session("id = %s", (session_id,))

    def find_session_by_access_fp(self, access_fp: str) -> Optional[Session]:
        return self._fetch_session("access_fp = %s", (access_fp,))

    def find_session_by_refresh_fp(self, refresh_fp: str) -> Optional[Session]:
        return self._fetch_session("refresh_fp = %s", (refresh_fp,))

    def _fetch_session(self, clause: str, params: tuple) -> Optional[Session]:
        row = self._fetch_one(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE {clause}", params
        )
        return self._session_from_row(row) if row else None

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
        params = {
            "id": session_id,
            "expected_refresh_fp": expected_refresh_fp,
            "now": now,
            "access_fp": access_fp,
            "access_expires_at": access_expires_at,
            "refresh_fp": refresh_fp,
            "refresh_expires_at": refresh_expires_at,
        }
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE sessions SET
                    access_fp = %(access_fp)s,
                    access_expires_at = %(access_expires_at)s,
                    last_activity_at = %(now)s,
                    refresh_fp = COALESCE(%(refresh_fp)s, refresh_fp),
                    refresh_expires_at = COALESCE(%(refresh_expires_at)s, refresh_expires_at)
                WHERE id = %(id)s
                  AND active
                  AND refresh_fp = %(expected_refresh_fp)s
                  AND refresh_expires_at > %(now)s
                RETURNING {_SESSION_COLUMNS}
                """,
                params,
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, *, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE sessions SET last_activity_at = %(now)s
                WHERE id = %(id)s AND active AND access_expires_at > %(now)s
                RETURNING {_SESSION_COLUMNS}
                """,
                {"id": session_id, "now": now},
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_sessions_by_fingerprint(self, fingerprint: str, *, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE sessions SET active = FALSE, ended_at = %(now)s
                WHERE active AND (access_fp = %(fp)s OR refresh_fp = %(fp)s)
                RETURNING {_SESSION_COLUMNS}
                """,
                {"fp": fingerprint, "now": now},
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def deactivate_account_sessions(self, account_id: str, *, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE sessions SET active = FALSE, ended_at = %(now)s
                WHERE active AND account_id = %(account_id)s
                RETURNING {_SESSION_COLUMNS}
                """,
                {"account_id": account_id, "now": now},
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def deactivate_expired_sessions(self, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET active = FALSE, ended_at = %(now)s
                WHERE active AND access_expires_at <= %(now)s AND refresh_expires_at <= %(now)s
                """,
                {"now": now},
            )
            return cur.rowcount

    def list_sessions(self, account_id: str, *, active_only: bool = True) -> List[Session]:
        clause = "account_id = %s AND active" if active_only else "account_id = %s"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE {clause} ORDER BY issued_at DESC",
                (account_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # Verification records ----------------------------------------------

    def create_verification(self, record: VerificationRecord) -> VerificationRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO verification_records ({_VERIFICATION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.purpose.value,
                        record.code,
                        record.token_hash,
                        record.created_at,
                        record.expires_at,
                        record.attempts,
                        record.max_attempts,
                        record.used,
                        record.used_at,
                        record.superseded,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": record.account_id}
            )
        return record

    def latest_verification(
        self, account_id: str, purpose: Purpose | str
    ) -> Optional[VerificationRecord]:
        row = self._fetch_one(
            f"""
            SELECT {_VERIFICATION_COLUMNS} FROM verification_records
            WHERE account_id = %s AND purpose = %s
            ORDER BY created_at DESC, seq DESC
            LIMIT 1
            """,
            (account_id, Purpose(purpose).value),
        )
        return self._verification_from_row(row) if row else None

    def get_verification(self, record_id: str) -> Optional[VerificationRecord]:
        row = self._fetch_one(
            f"SELECT {_VERIFICATION_COLUMNS} FROM verification_records WHERE id = %s",
            (record_id,),
        )
        return self._verification_from_row(row) if row else None

    def supersede_verifications(self, account_id: str, purpose: Purpose | str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE verification_records SET used = TRUE, superseded = TRUE
                WHERE account_id = %s AND purpose = %s AND NOT used
                """,
                (account_id, Purpose(purpose).value),
            )
            return cur.rowcount

    def consume_verification(
        self, record_id: str, *, now: datetime
    ) -> Optional[VerificationRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE verification_records SET used = TRUE, used_at = %(now)s
                WHERE id = %(id)s AND {_PENDING_VERIFICATION}
                RETURNING {_VERIFICATION_COLUMNS}
                """,
                {"id": record_id, "now": now},
            ).fetchone()
        return self._verification_from_row(row) if row else None

    def increment_verification_attempts(
        self, record_id: str, *, now: datetime
    ) -> Optional[VerificationRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE verification_records SET attempts = attempts + 1
                WHERE id = %(id)s AND {_PENDING_VERIFICATION}
                RETURNING {_VERIFICATION_COLUMNS}
                """,
                {"id": record_id, "now": now},
            ).fetchone()
        return self._verification_from_row(row) if row else None

    def retire_expired_verifications(self, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE verification_records SET used = TRUE, superseded = TRUE
                WHERE NOT used AND expires_at < %s
                """,
                (now,),
            )
            return cur.rowcount

    # Row mapping --------------------------------------------------------

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            phone=row.get("phone"),
            role=Role(row.get("role") or Role.PASSENGER.value),
            email_verified=bool(row.get("email_verified")),
            phone_verified=bool(row.get("phone_verified")),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> Credential:
        return Credential(
            account_id=str(row["account_id"]),
            password_hash=row["password_hash"],
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=row.get("locked_until"),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        client_address = row.get("client_address")
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            access_fp=row["access_fp"],
            refresh_fp=row["refresh_fp"],
            issued_at=row["issued_at"],
            access_expires_at=row["access_expires_at"],
            refresh_expires_at=row["refresh_expires_at"],
            last_activity_at=row["last_activity_at"],
            role=Role(row.get("role") or Role.PASSENGER.value),
            verified=bool(row.get("verified")),
            device=row.get("device"),
            client_address=str(client_address) if client_address is not None else None,
            active=bool(row["active"]),
            ended_at=row.get("ended_at"),
        )

    @staticmethod
    def _verification_from_row(row: Dict[str, Any]) -> VerificationRecord:
        return VerificationRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            purpose=Purpose(row["purpose"]),
            code=row["code"],
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            used=bool(row["used"]),
            used_at=row.get("used_at"),
            superseded=bool(row.get("superseded")),
        )
