from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from rideauth.logging import get_logger
from rideauth.storage.errors import ConstraintViolation, StoreUnavailable
from rideauth.storage.models import Purpose, Role
from rideauth.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, responses=None):
        self.conn = FakeConnection(list(responses or []))
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


def _store(*responses):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://rideauth@localhost/rideauth"
    store.logger = get_logger("test")
    store.pool = FakePool(responses)
    return store


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "email": "rider@example.com",
        "phone": "+15550101",
        "role": "driver",
        "email_verified": True,
        "phone_verified": False,
        "is_active": True,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def _session_row(**overrides):
    row = {
        "id": "sess-1",
        "account_id": "acct-1",
        "access_fp": "a" * 64,
        "refresh_fp": "r" * 64,
        "device": "ios",
        "client_address": "203.0.113.9",
        "issued_at": NOW,
        "access_expires_at": NOW + timedelta(hours=1),
        "refresh_expires_at": NOW + timedelta(days=7),
        "last_activity_at": NOW,
        "active": True,
        "ended_at": None,
        "role": "passenger",
        "verified": False,
    }
    row.update(overrides)
    return row


def test_account_rows_map_to_models():
    store = _store(FakeCursor([_account_row()]))

    account = store.get_account_by_email("  Rider@Example.com ")

    assert account.role is Role.DRIVER
    assert account.email_verified is True
    assert store.pool.conn.statements[0][1] == ("rider@example.com",)


def test_create_account_writes_account_and_credential_together():
    store = _store(FakeCursor(), FakeCursor())

    account = store.create_account("Rider@Example.com", "argon-hash", phone="+15550101")

    assert account.email == "rider@example.com"
    inserts = [sql for sql, _ in store.pool.conn.statements]
    assert inserts[0].startswith("INSERT INTO accounts")
    assert inserts[1].startswith("INSERT INTO credentials")


def test_unique_violation_becomes_constraint_violation():
    store = _store(
        errors.UniqueViolation('duplicate key value violates unique constraint "accounts_phone_key"')
    )

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("rider@example.com", "argon-hash", phone="+15550101")

    assert excinfo.value.detail == {"field": "phone"}


def test_foreign_key_violation_on_session_insert():
    store = _store(errors.ForeignKeyViolation("sessions_account_id_fkey"))
    session = store._session_from_row(_session_row(account_id="ghost"))

    with pytest.raises(ConstraintViolation):
        store.create_session(session)


def test_operational_error_becomes_store_unavailable():
    store = _store(errors.OperationalError("connection refused"))

    with pytest.raises(StoreUnavailable):
        store.get_account("acct-1")


@pytest.mark.parametrize(
    "lookup",
    [
        lambda store: store.get_account("abc"),
        lambda store: store.get_credential("abc"),
        lambda store: store.get_session("abc"),
        lambda store: store.get_verification("abc"),
        lambda store: store.latest_verification("abc", Purpose.TWO_FACTOR),
        lambda store: store.mark_contact_verified("abc", Purpose.EMAIL),
    ],
)
def test_malformed_uuid_key_finds_nothing(lookup):
    store = _store(errors.InvalidTextRepresentation('invalid input syntax for type uuid: "abc"'))

    assert lookup(store) is None


def test_mark_contact_verified_picks_column_by_purpose():
    store = _store(FakeCursor([_account_row(phone_verified=True)]))

    account = store.mark_contact_verified("acct-1", Purpose.SMS)

    assert account.phone_verified is True
    assert "SET phone_verified = TRUE" in store.pool.conn.statements[0][0]
    with pytest.raises(ValueError):
        store.mark_contact_verified("acct-1", Purpose.PASSWORD_RESET)


def test_set_password_hash_for_unknown_account():
    store = _store(FakeCursor(rowcount=0))

    with pytest.raises(ConstraintViolation):
        store.set_password_hash("ghost", "hash", now=NOW)


def test_increment_failed_attempts_is_one_statement():
    store = _store(
        FakeCursor(
            [
                {
                    "account_id": "acct-1",
                    "password_hash": "hash",
                    "failed_attempts": 5,
                    "locked_until": NOW + timedelta(minutes=15),
                    "updated_at": NOW,
                }
            ]
        )
    )

    cred = store.increment_failed_attempts(
        "acct-1", now=NOW, threshold=5, lock_until=NOW + timedelta(minutes=15)
    )

    assert cred.failed_attempts == 5
    assert cred.is_locked(NOW)
    assert len(store.pool.conn.statements) == 1
    sql, params = store.pool.conn.statements[0]
    assert sql.startswith("UPDATE credentials SET")
    assert params["threshold"] == 5


def test_session_rows_map_inet_address_to_text():
    class Inet:
        def __str__(self):
            return "203.0.113.9"

    store = _store(FakeCursor([_session_row(client_address=Inet())]))

    session = store.find_session_by_access_fp("a" * 64)

    assert session.client_address == "203.0.113.9"
    assert session.usable(NOW)


def test_conditional_refresh_returns_none_when_no_row_matches():
    store = _store(FakeCursor([]))

    assert store.update_session_tokens(
        "sess-1",
        expected_refresh_fp="stale",
        now=NOW,
        access_fp="b" * 64,
        access_expires_at=NOW + timedelta(hours=1),
    ) is None
    assert "refresh_fp = %(expected_refresh_fp)s" in store.pool.conn.statements[0][0]


def test_verification_attempts_only_counted_while_pending():
    store = _store(FakeCursor([]))

    assert store.increment_verification_attempts("rec-1", now=NOW) is None
    sql = store.pool.conn.statements[0][0]
    assert "attempts < max_attempts" in sql
    assert "NOT used" in sql


def test_cleanup_counts_come_from_rowcount():
    store = _store(FakeCursor(rowcount=3), FakeCursor(rowcount=2))

    assert store.deactivate_expired_sessions(now=NOW) == 3
    assert store.retire_expired_verifications(now=NOW) == 2


def test_missing_tables_fail_schema_check():
    store = _store(
        FakeCursor([{"oid": "accounts"}]),
        FakeCursor([{"oid": None}]),
        FakeCursor([{"oid": "sessions"}]),
        FakeCursor([{"oid": None}]),
    )

    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()

    assert "credentials, verification_records" in str(excinfo.value)


def test_close_closes_pool():
    store = _store()
    store.close()

    assert store.pool.closed is True
