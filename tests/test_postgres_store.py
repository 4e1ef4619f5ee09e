"""Tests for the Postgres store's statement shapes, using a scripted fake pool."""

import contextlib
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from tessera.storage.errors import ConstraintViolation
from tessera.storage.postgres import SCHEMA_STATEMENTS, PostgresStore, _unique_violation


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.results:
            return self.pool.results.pop(0)
        return FakeCursor()

    @contextlib.contextmanager
    def transaction(self):
        yield self


class FakePool:
    def __init__(self, results=None):
        self.executed = []
        self.results = list(results or [])
        self.closed = False

    @contextlib.contextmanager
    def connection(self):
        yield FakeConnection(self)

    def close(self):
        self.closed = True


def _account_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "email": "alice@example.com",
        "password_hash": "digest",
        "active": True,
        "email_verified": False,
        "phone_verified": False,
        "ban": {"kind": "none"},
        "failed_login_count": 0,
        "last_failed_login_at": None,
        "locked_until": None,
        "created_at": datetime.now(timezone.utc),
    }
    row.update(overrides)
    return row


def test_schema_is_applied_on_startup():
    pool = FakePool()
    PostgresStore("postgresql://unused", pool=pool)
    assert len(pool.executed) == len(SCHEMA_STATEMENTS)


def test_schema_enforces_uniqueness_constraints():
    schema = "\n".join(SCHEMA_STATEMENTS)
    for constraint in (
        "account_email_key",
        "provider_link_subject_key",
        "device_identifier_key",
        "auth_session_device_key",
        "auth_session_refresh_hash_key",
    ):
        assert constraint in schema


def test_bind_refresh_token_is_single_conditional_update():
    pool = FakePool([FakeCursor(rows=[{"id": "s"}])])
    store = PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)
    now = datetime.now(timezone.utc)
    assert store.bind_refresh_token("sess-1", "old", "new", now, ttl_minutes=90)
    sql, params = pool.executed[-1]
    assert sql.startswith("UPDATE auth_session")
    assert "expires_at = %s" in sql
    assert "refresh_token_hash = %s AND active" in sql
    assert params == ("new", now, now + timedelta(minutes=90), "sess-1", "old")


def test_bind_refresh_token_reports_lost_swap():
    pool = FakePool([FakeCursor(rows=[])])
    store = PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)
    assert store.bind_refresh_token("sess-1", "old", "new") is False


def test_record_failed_login_increments_in_place():
    now = datetime.now(timezone.utc)
    locked = now + timedelta(minutes=30)
    pool = FakePool(
        [
            FakeCursor(rows=[_account_row(failed_login_count=5, locked_until=locked)]),
            FakeCursor(rows=[]),
        ]
    )
    store = PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)
    account = store.record_failed_login("acct-1", now, 5, 30)
    sql, params = pool.executed[0]
    assert "failed_login_count = failed_login_count + 1" in sql
    assert params == (now, 5, locked, "acct-1")
    assert account.failed_login_count == 5
    assert account.is_locked(now)


def test_remove_provider_link_locks_account_row():
    pool = FakePool(
        [
            FakeCursor(rows=[{"password_hash": None}]),
            FakeCursor(rows=[{"provider": "google"}, {"provider": "apple"}]),
            FakeCursor(rowcount=1),
        ]
    )
    store = PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)
    assert store.remove_provider_link("acct-1", "google")
    assert pool.executed[0][0].endswith("FOR UPDATE")
    assert pool.executed[-1] == (
        "DELETE FROM provider_link WHERE account_id = %s AND provider = %s",
        ("acct-1", "google"),
    )


def test_remove_provider_link_refuses_last_method():
    pool = FakePool(
        [
            FakeCursor(rows=[{"password_hash": None}]),
            FakeCursor(rows=[{"provider": "google"}]),
        ]
    )
    store = PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)
    with pytest.raises(ConstraintViolation) as exc:
        store.remove_provider_link("acct-1", "google")
    assert exc.value.detail["reason"] == "last_sign_in_method"
    assert not any(sql.startswith("DELETE") for sql, _ in pool.executed)


def test_get_session_skips_query_for_non_uuid_ids():
    pool = FakePool()
    store = PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)
    assert store.get_session("not-a-uuid") is None
    assert pool.executed == []


def test_ban_is_decoded_from_json_text():
    row = _account_row(ban='{"kind": "permanent", "reason": "abuse"}')
    account = PostgresStore._account_from_row(row)
    assert account.ban.kind == "permanent"
    assert account.is_banned(datetime.now(timezone.utc))


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("account_email_key", "email"),
        ("auth_session_refresh_hash_key", "refresh_token_hash"),
        ("provider_link_subject_key", "provider"),
        ("something_else", None),
    ],
)
def test_unique_violation_maps_constraint_to_field(constraint, field):
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))
    violation = _unique_violation(exc, "duplicate")
    assert violation.field == field
    assert violation.detail["constraint"] == constraint


def test_close_closes_pool():
    pool = FakePool()
    store = PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)
    store.close()
    assert pool.closed
