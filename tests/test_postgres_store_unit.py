from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from usergate.logging import get_logger
from usergate.storage.errors import ConstraintViolation, StoreUnavailable
from usergate.storage.models import TokenPurpose
from usergate.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _Cursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class RecordingConn:
    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.statements = []
        self.transactions = []

    @contextmanager
    def transaction(self):
        self.transactions.append("begin")
        try:
            yield
        except Exception:
            self.transactions.append("rollback")
            raise
        self.transactions.append("commit")

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return _Cursor(self.rows.pop(0) if self.rows else None)


class RecordingPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = RecordingPool(conn)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("tests.postgres")
    return store


def _user_row(**overrides):
    row = {
        "id": 7,
        "name": "Alice",
        "email": "alice@example.com",
        "password_hash": "hash",
        "role": "Customer",
        "is_verified": True,
        "address": None,
        "lat": None,
        "lng": None,
        "phone": None,
        "photo": None,
        "created_at": datetime.now(timezone.utc),
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_constructor_creates_schema_and_seeds_roles():
    conn = RecordingConn()
    PostgresStore("postgresql://unit-test", pool=RecordingPool(conn), default_roles=("Customer",))

    sql = [statement for statement, _ in conn.statements]
    assert any("CREATE TABLE IF NOT EXISTS verification_token" in s for s in sql)
    assert any("consumed_at TIMESTAMPTZ" in s for s in sql)
    assert conn.statements[-1] == (
        "INSERT INTO role (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
        ("Customer",),
    )


def test_unstubbed_pool_is_not_touched_by_helpers():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()

    assert store._normalize_email(" A@B.com ") == "a@b.com"
    assert store._user_from_row(_user_row()).id == 7


def test_create_user_maps_unique_violation():
    store = _store(RecordingConn(error=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("Alice", "alice@example.com", "hash")

    assert excinfo.value.detail == {"field": "email"}


def test_create_user_missing_role():
    store = _store(RecordingConn(rows=[None]))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("Alice", "alice@example.com", "hash", role="Ghost")

    assert excinfo.value.detail["field"] == "role"


def test_create_user_normalizes_email():
    conn = RecordingConn(rows=[{"id": 3, "created_at": datetime.now(timezone.utc)}])
    store = _store(conn)

    user = store.create_user("Alice", "Alice@Example.COM", "hash")

    assert user.id == 3
    assert user.email == "alice@example.com"
    assert conn.statements[0][1][1] == "alice@example.com"


def test_verified_only_lookup_filters_in_sql():
    conn = RecordingConn(rows=[_user_row()])
    store = _store(conn)

    user = store.get_user_by_email("Alice@example.com", verified_only=True)

    assert user.role == "Customer"
    sql, params = conn.statements[0]
    assert sql.endswith("AND u.is_verified = TRUE")
    assert params == ("alice@example.com",)


def test_verify_with_token_claims_and_updates_in_one_transaction():
    conn = RecordingConn(rows=[{"user_id": 7}, {"id": 7}, _user_row()])
    store = _store(conn)

    user = store.verify_with_token(1)

    assert user.id == 7
    claim_sql, claim_params = conn.statements[0]
    assert "consumed_at IS NULL AND deleted_at IS NULL" in claim_sql
    assert claim_sql.endswith("RETURNING user_id")
    assert claim_params == (1,)
    update_sql, update_params = conn.statements[1]
    assert update_sql.startswith("UPDATE app_user SET is_verified = TRUE")
    assert update_params == (7,)
    assert conn.transactions == ["begin", "commit"]


def test_redeemed_token_is_not_applied_again():
    conn = RecordingConn(rows=[None])
    store = _store(conn)

    assert store.reset_password_with_token(1, "hash") is None
    assert len(conn.statements) == 1
    assert conn.transactions == ["begin", "commit"]


def test_reset_password_with_token_passes_hash_then_owner():
    conn = RecordingConn(rows=[{"user_id": 7}, {"id": 7}, _user_row(password_hash="new")])
    store = _store(conn)

    user = store.reset_password_with_token(1, "new")

    assert user.password_hash == "new"
    assert conn.statements[1][1] == ("new", 7)


def test_missing_owner_rolls_back_the_claim():
    conn = RecordingConn(rows=[{"user_id": 7}, None])
    store = _store(conn)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.verify_with_token(1)

    assert excinfo.value.detail["field"] == "user_id"
    assert conn.transactions == ["begin", "rollback"]


def test_cancelled_statement_is_store_unavailable():
    conn = RecordingConn(
        error=errors.QueryCanceled("canceling statement due to statement timeout")
    )
    store = _store(conn)

    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_user(7)

    assert excinfo.value.transient is True


def test_connection_kwargs_set_statement_timeout():
    kwargs = PostgresStore._connection_kwargs(5000)

    assert kwargs["options"] == "-c statement_timeout=5000"
    assert kwargs["autocommit"] is False
    assert "options" not in PostgresStore._connection_kwargs(None)


def test_create_token_maps_foreign_key_violation():
    store = _store(RecordingConn(error=errors.ForeignKeyViolation("no user")))

    with pytest.raises(ConstraintViolation):
        store.create_verification_token(
            99,
            "value",
            TokenPurpose.EMAIL_VERIFICATION,
            datetime.now(timezone.utc) + timedelta(hours=1),
        )


def test_token_row_round_trip():
    now = datetime.now(timezone.utc)
    conn = RecordingConn(
        rows=[
            {
                "id": 5,
                "user_id": 7,
                "token": "value",
                "purpose": "reset_password",
                "expires_at": now + timedelta(hours=1),
                "created_at": now,
                "consumed_at": None,
                "deleted_at": None,
            }
        ]
    )
    store = _store(conn)

    record = store.get_verification_token("value")

    assert record.purpose is TokenPurpose.RESET_PASSWORD
    assert record.is_usable_for(TokenPurpose.RESET_PASSWORD)
