from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from rbac_admin.logging import get_logger
from rbac_admin.service.authorization import is_superadmin
from rbac_admin.service.cache import EntityCache, load_role
from rbac_admin.service.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from rbac_admin.service.transactions import MutationCoordinator, Store, StoreTransaction
from rbac_admin.service.users import UNSET, load_actor
from rbac_admin.service.validation import format_missing_ids, validate_role_name
from rbac_admin.storage.models import SUPERADMIN, Page, Role, RoleQuery, User

logger = get_logger(__name__)


@dataclass
class NewRole:
    name: str
    description: Optional[str] = None
    is_system: bool = False
    permission_ids: List[int] = field(default_factory=list)


@dataclass
class RolePatch:
    name: Any = UNSET
    description: Any = UNSET
    is_system: Any = UNSET
    permission_ids: Any = UNSET


async def resolve_permissions(tx: StoreTransaction, permission_ids: Sequence[int]) -> None:
    found = {perm.id for perm in await tx.get_permissions(permission_ids)}
    missing = [pid for pid in permission_ids if pid not in found]
    if missing:
        raise BadRequestError(
            f"Permissions not found: {format_missing_ids(missing)}",
            detail={"missing_permission_ids": missing},
        )


class RoleService:
    def __init__(
        self,
        store: Store,
        cache: EntityCache,
        *,
        coordinator: MutationCoordinator,
    ) -> None:
        self.store = store
        self.cache = cache
        self.coordinator = coordinator

    def _after_role_write(self, role_id: int) -> None:
        # Users embed their roles, so every cached user may be stale
        self.cache.invalidate_role(role_id)
        self.cache.invalidate_user()

    async def create_role(self, data: NewRole, actor_id: int) -> Role:
        name = validate_role_name(data.name)
        permission_ids = list(dict.fromkeys(data.permission_ids or []))

        async def _work(tx: StoreTransaction) -> Role:
            actor = await load_actor(tx, actor_id)
            if data.is_system and not is_superadmin(actor):
                raise ForbiddenError("Only superadmin can create system roles")
            if await tx.role_name_taken(name):
                raise ConflictError("Role already exists", detail={"field": "name"})
            await resolve_permissions(tx, permission_ids)
            role = Role(
                id=0,
                name=name,
                description=(data.description or "").strip() or None,
                is_system=bool(data.is_system),
            )
            return await tx.insert_role(role, permission_ids)

        role = await self.coordinator.run("create role", _work)
        logger.info("role_created", role_id=role.id, actor_id=actor_id)
        return role

    async def list_roles(self, query: RoleQuery, page: Page) -> Tuple[List[Role], int]:
        return await self.store.list_roles(query, page)

    async def get_role(self, role_id: int) -> Role:
        role = await load_role(self.cache, self.store, role_id)
        if role is None:
            raise NotFoundError("Role not found")
        return role

    async def list_role_users(self, role_id: int) -> List[User]:
        await self.get_role(role_id)
        return await self.store.list_role_users(role_id)

    async def update_role(self, role_id: int, patch: RolePatch, actor_id: int) -> Role:
        name = validate_role_name(patch.name) if patch.name is not UNSET else UNSET
        permission_ids = (
            list(dict.fromkeys(patch.permission_ids or []))
            if patch.permission_ids is not UNSET
            else None
        )

        async def _work(tx: StoreTransaction) -> Role:
            actor = await load_actor(tx, actor_id)
            role = await tx.get_role(role_id, for_update=True)
            if role is None:
                raise NotFoundError("Role not found")
            actor_is_superadmin = is_superadmin(actor)
            if role.is_system and not actor_is_superadmin:
                raise ForbiddenError("Only superadmin can modify system roles")
            if patch.is_system is not UNSET and bool(patch.is_system) != role.is_system:
                if not actor_is_superadmin:
                    raise ForbiddenError("Only superadmin can modify system roles")
                role.is_system = bool(patch.is_system)

            if name is not UNSET and name != role.name:
                if role.name == SUPERADMIN:
                    raise ForbiddenError("The superadmin role cannot be renamed")
                if await tx.role_name_taken(name, exclude_id=role.id):
                    raise ConflictError("Role already exists", detail={"field": "name"})
                role.name = name
            if patch.description is not UNSET:
                role.description = (patch.description or "").strip() or None
            if permission_ids is not None:
                await resolve_permissions(tx, permission_ids)
            return await tx.update_role(role, permission_ids)

        role = await self.coordinator.run("update role", _work)
        self._after_role_write(role_id)
        logger.info("role_updated", role_id=role_id, actor_id=actor_id)
        return role

    async def delete_role(self, role_id: int, actor_id: int) -> None:
        async def _work(tx: StoreTransaction) -> None:
            actor = await load_actor(tx, actor_id)
            role = await tx.get_role(role_id, for_update=True)
            if role is None:
                raise NotFoundError("Role not found")
            if role.is_system and not is_superadmin(actor):
                raise ForbiddenError("Only superadmin can delete system roles")
            if await tx.count_role_users(role_id):
                raise BadRequestError("Cannot delete role that has users assigned")
            await tx.delete_role(role_id)

        await self.coordinator.run("delete role", _work)
        self._after_role_write(role_id)
        logger.info("role_deleted", role_id=role_id, actor_id=actor_id)
