"""Tests for the in-memory store's transaction semantics."""

from datetime import datetime, timezone

import pytest

from rbac_admin.storage.errors import ConstraintViolation, ReferenceViolation
from rbac_admin.storage.memory import MemoryStore
from rbac_admin.storage.models import (
    Page,
    Permission,
    PermissionAction,
    PermissionModule,
    Role,
    User,
    UserQuery,
)


class Boom(Exception):
    pass


async def _add_role(store, name="editor", permission_ids=()):
    async with store.transaction() as tx:
        return await tx.insert_role(Role(id=0, name=name), list(permission_ids))


async def _add_user(store, username="jane", email="jane@example.com", role_ids=()):
    async with store.transaction() as tx:
        return await tx.insert_user(
            User(id=0, username=username, email=email, password_hash="x"),
            list(role_ids),
        )


class TestTransactions:
    """Commit publishes, failure discards."""

    async def test_commit_assigns_ids_and_publishes(self):
        store = MemoryStore()
        role = await _add_role(store)
        user = await _add_user(store, role_ids=[role.id])

        stored = await store.get_user(user.id)
        assert stored.role_ids == [role.id]
        assert stored.roles[0].name == "editor"

    async def test_exception_rolls_back_every_write(self):
        store = MemoryStore()
        role = await _add_role(store)

        with pytest.raises(Boom):
            async with store.transaction() as tx:
                await tx.insert_user(
                    User(id=0, username="jane", email="jane@example.com"), [role.id]
                )
                await tx.delete_role(999)
                raise Boom()

        assert await store.get_user_by_username("jane") is None
        assert (await store.get_role(role.id)).user_count == 0

    async def test_uncommitted_writes_are_invisible_outside(self):
        store = MemoryStore()
        async with store.transaction() as tx:
            await tx.insert_user(User(id=0, username="jane", email="jane@example.com"), [])
            assert await tx.get_user_by_username("jane") is not None
            assert await store.get_user_by_username("jane") is None
        assert await store.get_user_by_username("jane") is not None

    async def test_savepoint_restores_only_inner_writes(self):
        store = MemoryStore()
        async with store.transaction() as tx:
            await tx.insert_role(Role(id=0, name="kept"), [])
            with pytest.raises(Boom):
                async with tx.savepoint() as inner:
                    await inner.insert_role(Role(id=0, name="discarded"), [])
                    raise Boom()

        assert await store.get_role_by_name("kept") is not None
        assert await store.get_role_by_name("discarded") is None


class TestConstraints:
    async def test_username_unique_case_insensitively(self):
        store = MemoryStore()
        await _add_user(store, username="Jane")

        with pytest.raises(ConstraintViolation) as excinfo:
            await _add_user(store, username="  JANE ", email="other@example.com")
        assert excinfo.value.field == "username"

    async def test_email_stored_normalized(self):
        store = MemoryStore()
        user = await _add_user(store, email=" Jane@Example.COM ")
        assert user.email == "jane@example.com"
        assert (await store.get_user_by_email("JANE@example.com")).id == user.id

    async def test_unknown_role_is_a_reference_violation(self):
        store = MemoryStore()
        with pytest.raises(ReferenceViolation):
            await _add_user(store, role_ids=[42])

    async def test_assigned_role_cannot_be_deleted(self):
        store = MemoryStore()
        role = await _add_role(store)
        await _add_user(store, role_ids=[role.id])

        with pytest.raises(ReferenceViolation):
            async with store.transaction() as tx:
                await tx.delete_role(role.id)

    async def test_assigned_permission_cannot_be_deleted(self):
        store = MemoryStore()
        async with store.transaction() as tx:
            perm = await tx.insert_permission(
                Permission(
                    id=0,
                    name="user.read",
                    module=PermissionModule.USER,
                    action=PermissionAction.READ,
                )
            )
        await _add_role(store, permission_ids=[perm.id])

        with pytest.raises(ReferenceViolation):
            async with store.transaction() as tx:
                await tx.delete_permission(perm.id)

    async def test_deleting_user_clears_audit_references(self):
        store = MemoryStore()
        creator = await _add_user(store)
        async with store.transaction() as tx:
            other = await tx.insert_user(
                User(id=0, username="bob", email="bob@example.com", created_by_id=creator.id),
                [],
            )
            await tx.delete_user(creator.id)

        assert (await store.get_user(other.id)).created_by_id is None


class TestReads:
    async def test_returned_entities_are_detached(self):
        store = MemoryStore()
        user = await _add_user(store)
        user.is_locked = True
        user.roles.append(Role(id=99, name="ghost"))

        fresh = await store.get_user(user.id)
        assert fresh.is_locked is False
        assert fresh.roles == []

    async def test_list_users_filters_and_pages(self):
        store = MemoryStore()
        role = await _add_role(store)
        await _add_user(store, "alice", "alice@example.com", [role.id])
        await _add_user(store, "bob", "bob@example.com")
        await _add_user(store, "carol", "carol@example.com", [role.id])

        users, total = await store.list_users(
            UserQuery(role_ids=[role.id]),
            Page(page=1, limit=1, sort_by="username", sort_order="ASC"),
        )
        assert total == 2
        assert [u.username for u in users] == ["alice"]

        users, total = await store.list_users(UserQuery(search="BO"), Page())
        assert total == 1
        assert users[0].username == "bob"

    @pytest.mark.parametrize(
        "order, expected",
        [
            ("ASC", ["early", "late", "never_a", "never_b"]),
            ("DESC", ["late", "early", "never_b", "never_a"]),
        ],
    )
    async def test_missing_values_sort_last(self, order, expected):
        store = MemoryStore()
        early = await _add_user(store, "early", "early@example.com")
        late = await _add_user(store, "late", "late@example.com")
        await _add_user(store, "never_a", "never_a@example.com")
        await _add_user(store, "never_b", "never_b@example.com")
        async with store.transaction() as tx:
            early.last_login_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
            late.last_login_at = datetime(2024, 6, 1, tzinfo=timezone.utc)
            await tx.update_user(early)
            await tx.update_user(late)

        users, _ = await store.list_users(
            UserQuery(), Page(sort_by="lastLoginAt", sort_order=order)
        )

        assert [u.username for u in users] == expected
