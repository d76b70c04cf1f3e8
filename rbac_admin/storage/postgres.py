from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from psycopg import AsyncConnection, errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from rbac_admin.logging import get_logger
from rbac_admin.storage.common import (
    PERMISSION_SORT_FIELDS,
    ROLE_SORT_FIELDS,
    USER_SORT_FIELDS,
    normalize_identifier,
)
from rbac_admin.storage.errors import ConstraintViolation, ReferenceViolation
from rbac_admin.storage.models import (
    Page,
    Permission,
    PermissionAction,
    PermissionModule,
    PermissionQuery,
    Role,
    RoleQuery,
    User,
    UserQuery,
    utcnow,
)

REQUIRED_TABLES = ("users", "roles", "permissions", "user_roles", "role_permissions")

_UNIQUE_FIELDS = {
    "users_username_key": "username",
    "users_email_key": "email",
    "roles_name_key": "name",
    "permissions_name_key": "name",
}


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        password_hash=row.get("password") or "",
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        display_name=row.get("display_name"),
        phone=row.get("phone"),
        avatar_url=row.get("avatar_url"),
        is_verified=row.get("is_verified", False),
        is_active=row.get("is_active", True),
        is_locked=row.get("is_locked", False),
        login_attempts=row.get("login_attempts", 0),
        last_login_at=row.get("last_login_at"),
        created_by_id=row.get("created_by_id"),
        updated_by_id=row.get("updated_by_id"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _role_from_row(row: Dict[str, Any]) -> Role:
    return Role(
        id=row["id"],
        name=row["name"],
        description=row.get("description"),
        is_system=row.get("is_system", False),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _permission_from_row(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=row["id"],
        name=row["name"],
        module=PermissionModule(row["module"]),
        action=PermissionAction(row["action"]),
        description=row.get("description"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _order_by(page: Page, columns: dict[str, str]) -> sql.Composed:
    column = columns.get(page.sort_by, "id")
    direction = "DESC" if page.sort_order.upper() == "DESC" else "ASC"
    return sql.SQL(" ORDER BY {col} {dir} NULLS LAST, id {dir}").format(
        col=sql.Identifier(column), dir=sql.SQL(direction)
    )


def _where(clauses: List[str]) -> str:
    return (" WHERE " + " AND ".join(clauses)) if clauses else ""


class _Queries:
    """Read queries shared by the store (pooled) and transactions (bound)."""

    def _conn(self):
        """Async context manager yielding a connection; provided by subclasses."""
        raise NotImplementedError

    async def _attach_roles(self, conn: AsyncConnection, roles: List[Role]) -> List[Role]:
        if not roles:
            return roles
        role_ids = [role.id for role in roles]
        cur = await conn.execute(
            """
            SELECT rp.role_id, p.*
            FROM role_permissions rp JOIN permissions p ON p.id = rp.permission_id
            WHERE rp.role_id = ANY(%s)
            ORDER BY p.id
            """,
            (role_ids,),
        )
        by_role: Dict[int, List[Permission]] = {}
        for row in await cur.fetchall():
            by_role.setdefault(row["role_id"], []).append(_permission_from_row(row))
        cur = await conn.execute(
            "SELECT role_id, count(*) AS n FROM user_roles WHERE role_id = ANY(%s) GROUP BY role_id",
            (role_ids,),
        )
        counts = {row["role_id"]: row["n"] for row in await cur.fetchall()}
        for role in roles:
            role.permissions = by_role.get(role.id, [])
            role.user_count = counts.get(role.id, 0)
        return roles

    async def _attach_users(self, conn: AsyncConnection, users: List[User]) -> List[User]:
        if not users:
            return users
        cur = await conn.execute(
            """
            SELECT ur.user_id, r.*
            FROM user_roles ur JOIN roles r ON r.id = ur.role_id
            WHERE ur.user_id = ANY(%s)
            ORDER BY r.id
            """,
            ([user.id for user in users],),
        )
        rows = await cur.fetchall()
        roles: Dict[int, Role] = {}
        links: Dict[int, List[int]] = {}
        for row in rows:
            roles.setdefault(row["id"], _role_from_row(row))
            links.setdefault(row["user_id"], []).append(row["id"])
        await self._attach_roles(conn, list(roles.values()))
        for user in users:
            user.roles = [roles[rid] for rid in links.get(user.id, [])]
        return users

    async def _fetch_user(
        self, conn: AsyncConnection, clause: str, params: tuple, *, for_update: bool = False
    ) -> Optional[User]:
        query = f"SELECT * FROM users WHERE {clause}"
        if for_update:
            query += " FOR UPDATE"
        cur = await conn.execute(query, params)
        row = await cur.fetchone()
        if not row:
            return None
        (user,) = await self._attach_users(conn, [_user_from_row(row)])
        return user

    async def get_user(self, user_id: int, *, for_update: bool = False) -> Optional[User]:
        async with self._conn() as conn:
            return await self._fetch_user(conn, "id = %s", (user_id,), for_update=for_update)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self._conn() as conn:
            return await self._fetch_user(
                conn, "lower(username) = %s", (normalize_identifier(username),)
            )

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._conn() as conn:
            return await self._fetch_user(
                conn, "lower(email) = %s", (normalize_identifier(email),)
            )

    async def list_users(self, query: UserQuery, page: Page) -> Tuple[List[User], int]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("is_active", query.is_active),
            ("is_verified", query.is_verified),
            ("is_locked", query.is_locked),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if query.created_after:
            clauses.append("created_at >= %s")
            params.append(query.created_after)
        if query.created_before:
            clauses.append("created_at <= %s")
            params.append(query.created_before)
        if query.role_ids:
            clauses.append(
                "EXISTS (SELECT 1 FROM user_roles ur WHERE ur.user_id = users.id AND ur.role_id = ANY(%s))"
            )
            params.append(list(query.role_ids))
        if query.search:
            clauses.append(
                "(username ILIKE %s OR email ILIKE %s OR first_name ILIKE %s"
                " OR last_name ILIKE %s OR display_name ILIKE %s)"
            )
            params.extend([f"%{query.search}%"] * 5)
        where = _where(clauses)
        async with self._conn() as conn:
            cur = await conn.execute(f"SELECT count(*) AS n FROM users{where}", params)
            total = (await cur.fetchone())["n"]
            listing = sql.SQL("SELECT * FROM users" + where) + _order_by(
                page, USER_SORT_FIELDS
            ) + sql.SQL(" LIMIT %s OFFSET %s")
            cur = await conn.execute(listing, [*params, page.limit, page.offset])
            users = [_user_from_row(row) for row in await cur.fetchall()]
            return await self._attach_users(conn, users), total

    async def _fetch_role(
        self, conn: AsyncConnection, clause: str, params: tuple, *, for_update: bool = False
    ) -> Optional[Role]:
        query = f"SELECT * FROM roles WHERE {clause}"
        if for_update:
            query += " FOR UPDATE"
        cur = await conn.execute(query, params)
        row = await cur.fetchone()
        if not row:
            return None
        (role,) = await self._attach_roles(conn, [_role_from_row(row)])
        return role

    async def get_role(self, role_id: int, *, for_update: bool = False) -> Optional[Role]:
        async with self._conn() as conn:
            return await self._fetch_role(conn, "id = %s", (role_id,), for_update=for_update)

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        async with self._conn() as conn:
            return await self._fetch_role(conn, "lower(name) = %s", (name.strip().lower(),))

    async def get_roles(self, role_ids: Sequence[int]) -> List[Role]:
        ids = list(dict.fromkeys(role_ids))
        if not ids:
            return []
        async with self._conn() as conn:
            cur = await conn.execute(
                "SELECT * FROM roles WHERE id = ANY(%s) ORDER BY id", (ids,)
            )
            roles = [_role_from_row(row) for row in await cur.fetchall()]
            return await self._attach_roles(conn, roles)

    async def list_roles(self, query: RoleQuery, page: Page) -> Tuple[List[Role], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.name:
            clauses.append("name ILIKE %s")
            params.append(f"%{query.name}%")
        if query.is_system is not None:
            clauses.append("is_system = %s")
            params.append(query.is_system)
        if query.permission:
            clauses.append(
                "EXISTS (SELECT 1 FROM role_permissions rp JOIN permissions p ON p.id = rp.permission_id"
                " WHERE rp.role_id = roles.id AND p.name ILIKE %s)"
            )
            params.append(f"%{query.permission}%")
        where = _where(clauses)
        async with self._conn() as conn:
            cur = await conn.execute(f"SELECT count(*) AS n FROM roles{where}", params)
            total = (await cur.fetchone())["n"]
            listing = sql.SQL("SELECT * FROM roles" + where) + _order_by(
                page, ROLE_SORT_FIELDS
            ) + sql.SQL(" LIMIT %s OFFSET %s")
            cur = await conn.execute(listing, [*params, page.limit, page.offset])
            roles = [_role_from_row(row) for row in await cur.fetchall()]
            return await self._attach_roles(conn, roles), total

    async def list_role_users(self, role_id: int) -> List[User]:
        async with self._conn() as conn:
            cur = await conn.execute(
                """
                SELECT u.* FROM users u JOIN user_roles ur ON ur.user_id = u.id
                WHERE ur.role_id = %s ORDER BY u.id
                """,
                (role_id,),
            )
            users = [_user_from_row(row) for row in await cur.fetchall()]
            return await self._attach_users(conn, users)

    async def get_permission(
        self, permission_id: int, *, for_update: bool = False
    ) -> Optional[Permission]:
        query = "SELECT * FROM permissions WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        async with self._conn() as conn:
            cur = await conn.execute(query, (permission_id,))
            row = await cur.fetchone()
        return _permission_from_row(row) if row else None

    async def get_permission_by_name(self, name: str) -> Optional[Permission]:
        async with self._conn() as conn:
            cur = await conn.execute(
                "SELECT * FROM permissions WHERE lower(name) = %s", (name.strip().lower(),)
            )
            row = await cur.fetchone()
        return _permission_from_row(row) if row else None

    async def get_permissions(self, permission_ids: Sequence[int]) -> List[Permission]:
        ids = list(dict.fromkeys(permission_ids))
        if not ids:
            return []
        async with self._conn() as conn:
            cur = await conn.execute(
                "SELECT * FROM permissions WHERE id = ANY(%s) ORDER BY id", (ids,)
            )
            return [_permission_from_row(row) for row in await cur.fetchall()]

    async def list_permissions(
        self, query: PermissionQuery, page: Page
    ) -> Tuple[List[Permission], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.name:
            clauses.append("name ILIKE %s")
            params.append(f"%{query.name}%")
        if query.module is not None:
            clauses.append("module = %s")
            params.append(query.module.value)
        if query.action is not None:
            clauses.append("action = %s")
            params.append(query.action.value)
        where = _where(clauses)
        async with self._conn() as conn:
            cur = await conn.execute(
                f"SELECT count(*) AS n FROM permissions{where}", params
            )
            total = (await cur.fetchone())["n"]
            listing = sql.SQL("SELECT * FROM permissions" + where) + _order_by(
                page, PERMISSION_SORT_FIELDS
            ) + sql.SQL(" LIMIT %s OFFSET %s")
            cur = await conn.execute(listing, [*params, page.limit, page.offset])
            return [_permission_from_row(row) for row in await cur.fetchall()], total


def _translate_integrity_error(exc: Exception) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if isinstance(exc, errors.UniqueViolation):
        field = _UNIQUE_FIELDS.get(constraint or "", "value")
        return ConstraintViolation(
            f"{field} already exists", {"field": field, "constraint": constraint}
        )
    return ReferenceViolation(
        "referenced row does not exist or is still in use", {"constraint": constraint}
    )


class PostgresTransaction(_Queries):
    """Queries and writes bound to one connection inside ``conn.transaction()``."""

    def __init__(self, conn: AsyncConnection) -> None:
        self.conn = conn

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[AsyncConnection]:
        yield self.conn

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator["PostgresTransaction"]:
        # A nested transaction block is a SAVEPOINT in psycopg
        async with self.conn.transaction():
            yield self

    async def _write(self, query: Any, params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        try:
            cur = await self.conn.execute(query, params)
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise _translate_integrity_error(exc) from exc
        return await cur.fetchone() if cur.description else None

    async def username_taken(self, username: str, exclude_id: Optional[int] = None) -> bool:
        cur = await self.conn.execute(
            "SELECT 1 FROM users WHERE lower(username) = %s AND id IS DISTINCT FROM %s",
            (normalize_identifier(username), exclude_id),
        )
        return await cur.fetchone() is not None

    async def email_taken(self, email: str, exclude_id: Optional[int] = None) -> bool:
        cur = await self.conn.execute(
            "SELECT 1 FROM users WHERE lower(email) = %s AND id IS DISTINCT FROM %s",
            (normalize_identifier(email), exclude_id),
        )
        return await cur.fetchone() is not None

    async def _replace_links(
        self, table: str, owner_col: str, owner_id: int, target_col: str, ids: Sequence[int]
    ) -> None:
        await self._write(
            sql.SQL("DELETE FROM {} WHERE {} = %s").format(
                sql.Identifier(table), sql.Identifier(owner_col)
            ),
            (owner_id,),
        )
        for target_id in dict.fromkeys(ids):
            await self._write(
                sql.SQL("INSERT INTO {} ({}, {}) VALUES (%s, %s)").format(
                    sql.Identifier(table),
                    sql.Identifier(owner_col),
                    sql.Identifier(target_col),
                ),
                (owner_id, target_id),
            )

    async def insert_user(self, user: User, role_ids: Sequence[int]) -> User:
        row = await self._write(
            """
            INSERT INTO users (
                username, email, password, first_name, last_name, display_name, phone,
                avatar_url, is_verified, is_active, is_locked, login_attempts,
                last_login_at, created_by_id, updated_by_id
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                normalize_identifier(user.username),
                normalize_identifier(user.email),
                user.password_hash,
                user.first_name,
                user.last_name,
                user.display_name,
                user.phone,
                user.avatar_url,
                user.is_verified,
                user.is_active,
                user.is_locked,
                user.login_attempts,
                user.last_login_at,
                user.created_by_id,
                user.updated_by_id,
            ),
        )
        await self._replace_links("user_roles", "user_id", row["id"], "role_id", role_ids)
        return await self.get_user(row["id"])

    async def update_user(
        self, user: User, role_ids: Optional[Sequence[int]] = None
    ) -> User:
        await self._write(
            """
            UPDATE users SET
                username = %s, email = %s, password = %s, first_name = %s,
                last_name = %s, display_name = %s, phone = %s, avatar_url = %s,
                is_verified = %s, is_active = %s, is_locked = %s, login_attempts = %s,
                last_login_at = %s, updated_by_id = %s, updated_at = now()
            WHERE id = %s
            """,
            (
                normalize_identifier(user.username),
                normalize_identifier(user.email),
                user.password_hash,
                user.first_name,
                user.last_name,
                user.display_name,
                user.phone,
                user.avatar_url,
                user.is_verified,
                user.is_active,
                user.is_locked,
                user.login_attempts,
                user.last_login_at,
                user.updated_by_id,
                user.id,
            ),
        )
        if role_ids is not None:
            await self._replace_links("user_roles", "user_id", user.id, "role_id", role_ids)
        updated = await self.get_user(user.id)
        if updated is None:
            raise ReferenceViolation("user does not exist", {"user_id": user.id})
        return updated

    async def delete_user(self, user_id: int) -> bool:
        row = await self._write("DELETE FROM users WHERE id = %s RETURNING id", (user_id,))
        return row is not None

    async def role_name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        cur = await self.conn.execute(
            "SELECT 1 FROM roles WHERE lower(name) = %s AND id IS DISTINCT FROM %s",
            (name.strip().lower(), exclude_id),
        )
        return await cur.fetchone() is not None

    async def count_role_users(self, role_id: int) -> int:
        cur = await self.conn.execute(
            "SELECT count(*) AS n FROM user_roles WHERE role_id = %s", (role_id,)
        )
        return (await cur.fetchone())["n"]

    async def list_role_user_ids(self, role_id: int) -> List[int]:
        cur = await self.conn.execute(
            "SELECT user_id FROM user_roles WHERE role_id = %s ORDER BY user_id", (role_id,)
        )
        return [row["user_id"] for row in await cur.fetchall()]

    async def insert_role(self, role: Role, permission_ids: Sequence[int]) -> Role:
        row = await self._write(
            "INSERT INTO roles (name, description, is_system) VALUES (%s, %s, %s) RETURNING id",
            (role.name, role.description, role.is_system),
        )
        await self._replace_links(
            "role_permissions", "role_id", row["id"], "permission_id", permission_ids
        )
        return await self.get_role(row["id"])

    async def update_role(
        self, role: Role, permission_ids: Optional[Sequence[int]] = None
    ) -> Role:
        await self._write(
            """
            UPDATE roles SET name = %s, description = %s, is_system = %s, updated_at = now()
            WHERE id = %s
            """,
            (role.name, role.description, role.is_system, role.id),
        )
        if permission_ids is not None:
            await self._replace_links(
                "role_permissions", "role_id", role.id, "permission_id", permission_ids
            )
        updated = await self.get_role(role.id)
        if updated is None:
            raise ReferenceViolation("role does not exist", {"role_id": role.id})
        return updated

    async def delete_role(self, role_id: int) -> bool:
        row = await self._write("DELETE FROM roles WHERE id = %s RETURNING id", (role_id,))
        return row is not None

    async def permission_name_taken(
        self, name: str, exclude_id: Optional[int] = None
    ) -> bool:
        cur = await self.conn.execute(
            "SELECT 1 FROM permissions WHERE lower(name) = %s AND id IS DISTINCT FROM %s",
            (name.strip().lower(), exclude_id),
        )
        return await cur.fetchone() is not None

    async def count_permission_roles(self, permission_id: int) -> int:
        cur = await self.conn.execute(
            "SELECT count(*) AS n FROM role_permissions WHERE permission_id = %s",
            (permission_id,),
        )
        return (await cur.fetchone())["n"]

    async def insert_permission(self, permission: Permission) -> Permission:
        row = await self._write(
            """
            INSERT INTO permissions (name, module, action, description)
            VALUES (%s, %s, %s, %s) RETURNING *
            """,
            (
                permission.name,
                permission.module.value,
                permission.action.value,
                permission.description,
            ),
        )
        return _permission_from_row(row)

    async def update_permission(self, permission: Permission) -> Permission:
        row = await self._write(
            """
            UPDATE permissions SET name = %s, module = %s, action = %s, description = %s,
                updated_at = now()
            WHERE id = %s RETURNING *
            """,
            (
                permission.name,
                permission.module.value,
                permission.action.value,
                permission.description,
                permission.id,
            ),
        )
        if row is None:
            raise ReferenceViolation(
                "permission does not exist", {"permission_id": permission.id}
            )
        return _permission_from_row(row)

    async def delete_permission(self, permission_id: int) -> bool:
        row = await self._write(
            "DELETE FROM permissions WHERE id = %s RETURNING id", (permission_id,)
        )
        return row is not None


class PostgresStore(_Queries):
    """Async Postgres-backed store on a psycopg connection pool."""

    kind = "postgres"

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self._opened = False
        self._open_lock = asyncio.Lock()

    async def open(self) -> None:
        async with self._open_lock:
            if self._opened:
                return
            await self.pool.open()
            self._opened = True
        await self._verify_required_schema()
        self.logger.info("postgres_store_opened", min_size=self.pool.min_size)

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[AsyncConnection]:
        if not self._opened:
            await self.open()
        async with self.pool.connection() as conn:
            yield conn

    async def _verify_required_schema(self) -> None:
        """Refuse to serve requests against a database without the schema."""

        async with self._conn() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply rbac_admin/storage/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        """Open a transaction on a pooled connection.

        The block commits when the body returns and rolls back on any exception;
        the connection goes back to the pool on every exit path.
        """

        async with self._conn() as conn:
            async with conn.transaction():
                yield PostgresTransaction(conn)
