from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg import errors

from mentorauth.storage.errors import DuplicateRecord
from mentorauth.storage.models import OtpType
from mentorauth.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class RaisingPool:
    """Pool whose connections fail every statement with ``exc``."""

    def __init__(self, exc):
        self.exc = exc

    @contextmanager
    def connection(self):
        yield self

    def execute(self, *args, **kwargs):
        raise self.exc


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    return store


def test_row_mapping_ignores_unknown_columns(tmp_path: Path):
    store = _store(tmp_path, DummyPool())
    now = datetime.now(timezone.utc)

    record = store._otp(
        {
            "id": "otp-1",
            "identifier": "a@example.com",
            "code": "123456",
            "otp_type": "LOGIN",
            "expires_at": now + timedelta(minutes=5),
            "created_at": now,
            "attempts": 0,
            "verified": False,
            "verified_at": None,
            "locked_until": None,
            "updated_at": now,
        }
    )

    assert record.otp_type is OtpType.LOGIN
    assert store._user(None) is None
    assert store._device(None) is None


def test_duplicate_email_translated(tmp_path: Path):
    store = _store(tmp_path, RaisingPool(errors.UniqueViolation("duplicate key")))

    with pytest.raises(DuplicateRecord) as excinfo:
        store.create_user("dup@example.com", "Du", "Plicate")
    assert excinfo.value.field == "email"


class RecordingPool:
    """Hands out one connection per ``connection()`` call and records how each ended."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.statements = []
        self.connections = 0
        self.outcomes = []

    @contextmanager
    def connection(self):
        self.connections += 1
        try:
            yield self
        except Exception:
            self.outcomes.append("rollback")
            raise
        self.outcomes.append("commit")

    def execute(self, sql, params=None):
        self.statements.append(sql)
        if self.fail_on and self.fail_on in sql:
            raise errors.OperationalError("connection lost")
        return self

    def fetchone(self):
        return {"id": "user-1", "email": "new@example.com", "first_name": "Ne", "last_name": "W"}


def test_user_and_credential_share_one_transaction(tmp_path: Path):
    pool = RecordingPool()
    store = _store(tmp_path, pool)

    user = store.create_user("new@example.com", "Ne", "W", credential=("hash", "argon2id"))

    assert user.id == "user-1"
    assert pool.connections == 1
    assert pool.outcomes == ["commit"]
    assert "INSERT INTO app_user" in pool.statements[0]
    assert "INSERT INTO user_auth_credential" in pool.statements[1]


def test_failed_credential_insert_rolls_back_user(tmp_path: Path):
    pool = RecordingPool(fail_on="user_auth_credential")
    store = _store(tmp_path, pool)

    with pytest.raises(errors.OperationalError):
        store.create_user("new@example.com", "Ne", "W", credential=("hash", "argon2id"))

    assert pool.connections == 1
    assert pool.outcomes == ["rollback"]
