from contextlib import contextmanager
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from psycopg import errors

from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class DummyPool:
    def __init__(self, responses=None):
        self.conn = FakeConnection(list(responses or []))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(responses) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(responses)
    store.logger = MagicMock()
    return store


def _row(**overrides):
    row = {
        "id": "u-1",
        "email": "erin@example.com",
        "password_hash": "$argon2id$hash",
        "name": "Erin",
        "role": "USER",
        "created_at": datetime(2024, 1, 1),
    }
    row.update(overrides)
    return row


def test_get_user_by_email_maps_row():
    store = _store([[_row()]])
    user = store.get_user_by_email("erin@example.com")
    assert user.id == "u-1"
    assert user.role == "USER"
    sql, params = store.pool.conn.executed[0]
    assert sql == "SELECT * FROM app_user WHERE email = %s"
    assert params == ("erin@example.com",)


def test_get_user_missing_returns_none():
    store = _store([[]])
    assert store.get_user("nope") is None


def test_create_user_unique_violation_is_constraint_violation():
    store = _store([errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("erin@example.com", "$argon2id$hash")
    assert exc_info.value.detail == {"field": "email"}


def test_update_user_role_returns_updated_user():
    store = _store([[_row(role="ADMIN")]])
    user = store.update_user_role("u-1", "ADMIN")
    assert user.role == "ADMIN"
    assert store.pool.conn.executed[0][1] == ("ADMIN", "u-1")


def test_get_resource_owner():
    store = _store([[{"owner_id": "u-9"}], []])
    assert store.get_resource_owner("task-1") == "u-9"
    assert store.get_resource_owner("task-2") is None


def test_list_users():
    store = _store([[_row(), _row(id="u-2", email="finn@example.com")]])
    assert [u.id for u in store.list_users(limit=2)] == ["u-1", "u-2"]


def test_missing_schema_fails_fast():
    store = _store([[{"tbl": None}]])
    with pytest.raises(RuntimeError):
        store._verify_required_schema()
