"""Unit tests for the Postgres store that run without a database."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from rbac_admin.storage.errors import ConstraintViolation, ReferenceViolation
from rbac_admin.storage.models import PermissionAction, PermissionModule
from rbac_admin.storage.postgres import (
    PostgresStore,
    PostgresTransaction,
    _permission_from_row,
    _translate_integrity_error,
    _user_from_row,
)


class FakeCursor:
    def __init__(self, rows=None, description=True):
        self.rows = list(rows or [])
        self.description = description

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return self.rows


class FakeConnection:
    """Answers ``execute`` through a handler and records every statement."""

    def __init__(self, handler=None):
        self.handler = handler or (lambda query, params: FakeCursor())
        self.executed = []
        self.transactions = []

    async def execute(self, query, params=None):
        self.executed.append((query, params))
        return self.handler(query, params)

    @asynccontextmanager
    async def transaction(self):
        record = {"exited_with": None}
        self.transactions.append(record)
        try:
            yield
        except BaseException as exc:
            record["exited_with"] = type(exc).__name__
            raise


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0
        self.min_size = 1

    @asynccontextmanager
    async def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(conn):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.logger = SimpleNamespace(info=lambda *a, **k: None)
    store.pool = FakePool(conn)
    store._opened = True
    return store


class _DuplicateEmail(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="users_email_key")


class TestRowMapping:
    def test_user_row_maps_password_column(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        user = _user_from_row(
            {
                "id": 7,
                "username": "jane",
                "email": "jane@example.com",
                "password": "$argon2id$hash",
                "is_locked": True,
                "login_attempts": 5,
                "created_at": now,
            }
        )
        assert user.password_hash == "$argon2id$hash"
        assert user.is_locked is True
        assert user.created_at == now
        assert user.roles == []

    def test_permission_row_enums(self):
        perm = _permission_from_row(
            {"id": 1, "name": "user.read", "module": "user", "action": "read"}
        )
        assert perm.module is PermissionModule.USER
        assert perm.action is PermissionAction.READ


class TestIntegrityErrors:
    def test_unique_violation_names_the_field(self):
        violation = _translate_integrity_error(_DuplicateEmail("duplicate key"))
        assert type(violation) is ConstraintViolation
        assert violation.field == "email"
        assert violation.message == "email already exists"

    def test_foreign_key_violation_is_a_reference_violation(self):
        violation = _translate_integrity_error(errors.ForeignKeyViolation("fk"))
        assert isinstance(violation, ReferenceViolation)

    async def test_writes_translate_driver_errors(self):
        def handler(query, params):
            raise _DuplicateEmail("duplicate key")

        tx = PostgresTransaction(FakeConnection(handler))
        with pytest.raises(ConstraintViolation) as excinfo:
            await tx.delete_user(1)
        assert isinstance(excinfo.value.__cause__, errors.UniqueViolation)


class TestTransaction:
    async def test_uniqueness_lookup_normalizes(self):
        conn = FakeConnection(lambda q, p: FakeCursor([{"?column?": 1}]))
        tx = PostgresTransaction(conn)

        assert await tx.username_taken("  Jane ", exclude_id=3) is True
        assert conn.executed[0][1] == ("jane", 3)

    async def test_savepoint_is_a_nested_transaction_block(self):
        conn = FakeConnection()
        tx = PostgresTransaction(conn)

        with pytest.raises(ValueError):
            async with tx.savepoint() as inner:
                assert inner is tx
                raise ValueError("item failed")
        assert conn.transactions == [{"exited_with": "ValueError"}]

    async def test_store_transaction_rolls_back_on_error(self):
        conn = FakeConnection()
        store = _store(conn)

        with pytest.raises(RuntimeError):
            async with store.transaction():
                raise RuntimeError("boom")

        assert conn.transactions == [{"exited_with": "RuntimeError"}]
        assert store.pool.checkouts == 1

    async def test_count_role_users(self):
        conn = FakeConnection(lambda q, p: FakeCursor([{"n": 4}]))
        assert await PostgresTransaction(conn).count_role_users(2) == 4


class TestSchemaCheck:
    async def test_missing_tables_are_reported(self):
        def handler(query, params):
            (table,) = params
            oid = None if table in ("public.roles", "public.user_roles") else 123
            return FakeCursor([{"oid": oid}])

        store = _store(FakeConnection(handler))
        with pytest.raises(RuntimeError) as excinfo:
            await store._verify_required_schema()
        assert "roles, user_roles" in str(excinfo.value)

    async def test_complete_schema_passes(self):
        store = _store(FakeConnection(lambda q, p: FakeCursor([{"oid": 1}])))
        await store._verify_required_schema()
