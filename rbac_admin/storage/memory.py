from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

from rbac_admin.logging import get_logger
from rbac_admin.storage.common import (
    PERMISSION_SORT_FIELDS,
    ROLE_SORT_FIELDS,
    USER_SORT_FIELDS,
    contains_ci,
    normalize_identifier,
)
from rbac_admin.storage.errors import ConstraintViolation, ReferenceViolation
from rbac_admin.storage.models import (
    Page,
    Permission,
    PermissionQuery,
    Role,
    RoleQuery,
    User,
    UserQuery,
    utcnow,
)


@dataclass
class _State:
    """Rows without relations plus the two join tables."""

    users: Dict[int, User] = field(default_factory=dict)
    roles: Dict[int, Role] = field(default_factory=dict)
    permissions: Dict[int, Permission] = field(default_factory=dict)
    user_roles: Dict[int, Set[int]] = field(default_factory=dict)
    role_permissions: Dict[int, Set[int]] = field(default_factory=dict)
    sequences: Dict[str, int] = field(
        default_factory=lambda: {"users": 0, "roles": 0, "permissions": 0}
    )

    def next_id(self, table: str) -> int:
        self.sequences[table] += 1
        return self.sequences[table]


def _sort_key(value):
    if hasattr(value, "value"):
        return value.value
    return value


def _paginate(rows: list, page: Page, columns: dict[str, str]) -> Tuple[list, int]:
    attr = columns.get(page.sort_by, "id")
    descending = page.sort_order.upper() == "DESC"
    # NULLS LAST in both directions, ties broken by id
    present = [row for row in rows if getattr(row, attr) is not None]
    missing = [row for row in rows if getattr(row, attr) is None]
    ordered = sorted(
        present,
        key=lambda row: (_sort_key(getattr(row, attr)), row.id),
        reverse=descending,
    ) + sorted(missing, key=lambda row: row.id, reverse=descending)
    return ordered[page.offset : page.offset + page.limit], len(rows)


class _StateReader:
    """Read queries over a state snapshot; returned entities are detached copies."""

    def _state(self) -> _State:
        raise NotImplementedError

    def _hydrate_role(self, state: _State, row: Role) -> Role:
        perm_ids = state.role_permissions.get(row.id, set())
        permissions = [
            replace(state.permissions[pid])
            for pid in sorted(perm_ids)
            if pid in state.permissions
        ]
        user_count = sum(1 for ids in state.user_roles.values() if row.id in ids)
        return replace(row, permissions=permissions, user_count=user_count)

    def _hydrate_user(self, state: _State, row: User) -> User:
        role_ids = state.user_roles.get(row.id, set())
        roles = [
            self._hydrate_role(state, state.roles[rid])
            for rid in sorted(role_ids)
            if rid in state.roles
        ]
        return replace(row, roles=roles)

    async def get_user(self, user_id: int, *, for_update: bool = False) -> Optional[User]:
        state = self._state()
        row = state.users.get(user_id)
        return self._hydrate_user(state, row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        state = self._state()
        wanted = normalize_identifier(username)
        for row in state.users.values():
            if row.username == wanted:
                return self._hydrate_user(state, row)
        return None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        state = self._state()
        wanted = normalize_identifier(email)
        for row in state.users.values():
            if row.email == wanted:
                return self._hydrate_user(state, row)
        return None

    async def list_users(self, query: UserQuery, page: Page) -> Tuple[List[User], int]:
        state = self._state()
        matches = []
        for row in state.users.values():
            if query.is_active is not None and row.is_active != query.is_active:
                continue
            if query.is_verified is not None and row.is_verified != query.is_verified:
                continue
            if query.is_locked is not None and row.is_locked != query.is_locked:
                continue
            if query.created_after and row.created_at < query.created_after:
                continue
            if query.created_before and row.created_at > query.created_before:
                continue
            if query.role_ids and not (
                state.user_roles.get(row.id, set()) & set(query.role_ids)
            ):
                continue
            if query.search:
                haystacks = (
                    row.username,
                    row.email,
                    row.first_name,
                    row.last_name,
                    row.display_name,
                )
                if not any(contains_ci(h, query.search) for h in haystacks):
                    continue
            matches.append(row)
        rows, total = _paginate(matches, page, USER_SORT_FIELDS)
        return [self._hydrate_user(state, row) for row in rows], total

    async def get_role(self, role_id: int, *, for_update: bool = False) -> Optional[Role]:
        state = self._state()
        row = state.roles.get(role_id)
        return self._hydrate_role(state, row) if row else None

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        state = self._state()
        wanted = name.strip().lower()
        for row in state.roles.values():
            if row.name.lower() == wanted:
                return self._hydrate_role(state, row)
        return None

    async def get_roles(self, role_ids: Sequence[int]) -> List[Role]:
        state = self._state()
        return [
            self._hydrate_role(state, state.roles[rid])
            for rid in dict.fromkeys(role_ids)
            if rid in state.roles
        ]

    async def list_roles(self, query: RoleQuery, page: Page) -> Tuple[List[Role], int]:
        state = self._state()
        matches = []
        for row in state.roles.values():
            if query.name and not contains_ci(row.name, query.name):
                continue
            if query.is_system is not None and row.is_system != query.is_system:
                continue
            if query.permission:
                names = [
                    state.permissions[pid].name
                    for pid in state.role_permissions.get(row.id, set())
                    if pid in state.permissions
                ]
                if not any(contains_ci(n, query.permission) for n in names):
                    continue
            matches.append(row)
        rows, total = _paginate(matches, page, ROLE_SORT_FIELDS)
        return [self._hydrate_role(state, row) for row in rows], total

    async def list_role_users(self, role_id: int) -> List[User]:
        state = self._state()
        return [
            self._hydrate_user(state, state.users[uid])
            for uid in sorted(state.users)
            if role_id in state.user_roles.get(uid, set())
        ]

    async def get_permission(
        self, permission_id: int, *, for_update: bool = False
    ) -> Optional[Permission]:
        row = self._state().permissions.get(permission_id)
        return replace(row) if row else None

    async def get_permission_by_name(self, name: str) -> Optional[Permission]:
        wanted = name.strip().lower()
        for row in self._state().permissions.values():
            if row.name.lower() == wanted:
                return replace(row)
        return None

    async def get_permissions(self, permission_ids: Sequence[int]) -> List[Permission]:
        state = self._state()
        return [
            replace(state.permissions[pid])
            for pid in dict.fromkeys(permission_ids)
            if pid in state.permissions
        ]

    async def list_permissions(
        self, query: PermissionQuery, page: Page
    ) -> Tuple[List[Permission], int]:
        matches = []
        for row in self._state().permissions.values():
            if query.name and not contains_ci(row.name, query.name):
                continue
            if query.module is not None and row.module != query.module:
                continue
            if query.action is not None and row.action != query.action:
                continue
            matches.append(row)
        rows, total = _paginate(matches, page, PERMISSION_SORT_FIELDS)
        return [replace(row) for row in rows], total


class MemoryTransaction(_StateReader):
    """Works on a private copy of the store state, published on commit.

    The owning store serializes transactions, which gives the same lost-update
    protection a row lock gives in Postgres.
    """

    def __init__(self, state: _State) -> None:
        self.state = state

    def _state(self) -> _State:
        return self.state

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator["MemoryTransaction"]:
        snapshot = copy.deepcopy(self.state)
        try:
            yield self
        except BaseException:
            self.state = snapshot
            raise

    def _check_unique_user(self, user: User) -> None:
        for other in self.state.users.values():
            if other.id == user.id:
                continue
            if other.username == user.username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if other.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def _link_roles(self, user_id: int, role_ids: Sequence[int]) -> None:
        missing = [rid for rid in role_ids if rid not in self.state.roles]
        if missing:
            raise ReferenceViolation("role does not exist", {"role_ids": missing})
        self.state.user_roles[user_id] = set(role_ids)

    def _link_permissions(self, role_id: int, permission_ids: Sequence[int]) -> None:
        missing = [pid for pid in permission_ids if pid not in self.state.permissions]
        if missing:
            raise ReferenceViolation(
                "permission does not exist", {"permission_ids": missing}
            )
        self.state.role_permissions[role_id] = set(permission_ids)

    async def username_taken(self, username: str, exclude_id: Optional[int] = None) -> bool:
        wanted = normalize_identifier(username)
        return any(
            row.username == wanted and row.id != exclude_id
            for row in self.state.users.values()
        )

    async def email_taken(self, email: str, exclude_id: Optional[int] = None) -> bool:
        wanted = normalize_identifier(email)
        return any(
            row.email == wanted and row.id != exclude_id
            for row in self.state.users.values()
        )

    async def insert_user(self, user: User, role_ids: Sequence[int]) -> User:
        row = replace(
            user,
            id=self.state.next_id("users"),
            username=normalize_identifier(user.username),
            email=normalize_identifier(user.email),
            roles=[],
        )
        self._check_unique_user(row)
        self.state.users[row.id] = row
        self._link_roles(row.id, role_ids)
        return self._hydrate_user(self.state, row)

    async def update_user(
        self, user: User, role_ids: Optional[Sequence[int]] = None
    ) -> User:
        if user.id not in self.state.users:
            raise ReferenceViolation("user does not exist", {"user_id": user.id})
        row = replace(
            user,
            username=normalize_identifier(user.username),
            email=normalize_identifier(user.email),
            roles=[],
            updated_at=utcnow(),
        )
        self._check_unique_user(row)
        self.state.users[row.id] = row
        if role_ids is not None:
            self._link_roles(row.id, role_ids)
        return self._hydrate_user(self.state, row)

    async def delete_user(self, user_id: int) -> bool:
        if self.state.users.pop(user_id, None) is None:
            return False
        self.state.user_roles.pop(user_id, None)
        for row in self.state.users.values():
            if row.created_by_id == user_id:
                row.created_by_id = None
            if row.updated_by_id == user_id:
                row.updated_by_id = None
        return True

    async def role_name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        wanted = name.strip().lower()
        return any(
            row.name.lower() == wanted and row.id != exclude_id
            for row in self.state.roles.values()
        )

    async def count_role_users(self, role_id: int) -> int:
        return sum(1 for ids in self.state.user_roles.values() if role_id in ids)

    async def list_role_user_ids(self, role_id: int) -> List[int]:
        return sorted(
            uid for uid, ids in self.state.user_roles.items() if role_id in ids
        )

    async def insert_role(self, role: Role, permission_ids: Sequence[int]) -> Role:
        row = replace(role, id=self.state.next_id("roles"), permissions=[], user_count=0)
        if await self.role_name_taken(row.name):
            raise ConstraintViolation("role name already exists", {"field": "name"})
        self.state.roles[row.id] = row
        self._link_permissions(row.id, permission_ids)
        return self._hydrate_role(self.state, row)

    async def update_role(
        self, role: Role, permission_ids: Optional[Sequence[int]] = None
    ) -> Role:
        if role.id not in self.state.roles:
            raise ReferenceViolation("role does not exist", {"role_id": role.id})
        if await self.role_name_taken(role.name, exclude_id=role.id):
            raise ConstraintViolation("role name already exists", {"field": "name"})
        row = replace(role, permissions=[], user_count=0, updated_at=utcnow())
        self.state.roles[row.id] = row
        if permission_ids is not None:
            self._link_permissions(row.id, permission_ids)
        return self._hydrate_role(self.state, row)

    async def delete_role(self, role_id: int) -> bool:
        if await self.count_role_users(role_id):
            raise ReferenceViolation("role is still assigned", {"role_id": role_id})
        if self.state.roles.pop(role_id, None) is None:
            return False
        self.state.role_permissions.pop(role_id, None)
        return True

    async def permission_name_taken(
        self, name: str, exclude_id: Optional[int] = None
    ) -> bool:
        wanted = name.strip().lower()
        return any(
            row.name.lower() == wanted and row.id != exclude_id
            for row in self.state.permissions.values()
        )

    async def count_permission_roles(self, permission_id: int) -> int:
        return sum(
            1 for ids in self.state.role_permissions.values() if permission_id in ids
        )

    async def insert_permission(self, permission: Permission) -> Permission:
        if await self.permission_name_taken(permission.name):
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        row = replace(permission, id=self.state.next_id("permissions"))
        self.state.permissions[row.id] = row
        return replace(row)

    async def update_permission(self, permission: Permission) -> Permission:
        if permission.id not in self.state.permissions:
            raise ReferenceViolation(
                "permission does not exist", {"permission_id": permission.id}
            )
        if await self.permission_name_taken(permission.name, exclude_id=permission.id):
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        row = replace(permission, updated_at=utcnow())
        self.state.permissions[row.id] = row
        return replace(row)

    async def delete_permission(self, permission_id: int) -> bool:
        if await self.count_permission_roles(permission_id):
            raise ReferenceViolation(
                "permission is still assigned", {"permission_id": permission_id}
            )
        return self.state.permissions.pop(permission_id, None) is not None


class MemoryStore(_StateReader):
    """In-memory backing store used by tests and local development."""

    kind = "memory"

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._committed = _State()
        self._write_lock = asyncio.Lock()

    def _state(self) -> _State:
        return self._committed

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        """Run a unit of work against a private copy; publish it only on success."""

        async with self._write_lock:
            tx = MemoryTransaction(copy.deepcopy(self._committed))
            yield tx
            self._committed = tx.state
