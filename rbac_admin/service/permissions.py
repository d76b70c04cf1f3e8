from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from rbac_admin.logging import get_logger
from rbac_admin.service.cache import EntityCache
from rbac_admin.service.errors import BadRequestError, ConflictError, NotFoundError
from rbac_admin.service.transactions import MutationCoordinator, Store, StoreTransaction
from rbac_admin.service.users import UNSET
from rbac_admin.storage.models import (
    Page,
    Permission,
    PermissionAction,
    PermissionModule,
    PermissionQuery,
)

logger = get_logger(__name__)

PERMISSION_NAME_MAX_LENGTH = 100


def permission_name(module: PermissionModule, action: PermissionAction) -> str:
    return f"{PermissionModule(module).value}.{PermissionAction(action).value}"


def _validate_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise BadRequestError("Permission name is required")
    if len(name) > PERMISSION_NAME_MAX_LENGTH:
        raise BadRequestError(
            f"Permission name must be at most {PERMISSION_NAME_MAX_LENGTH} characters"
        )
    return name


@dataclass
class NewPermission:
    module: PermissionModule
    action: PermissionAction
    name: Optional[str] = None
    description: Optional[str] = None


@dataclass
class PermissionPatch:
    name: Any = UNSET
    module: Any = UNSET
    action: Any = UNSET
    description: Any = UNSET


class PermissionService:
    """Permission catalogue. Callers gate writes to the superadmin role."""

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

    async def list_permissions(
        self, query: PermissionQuery, page: Page
    ) -> Tuple[List[Permission], int]:
        return await self.store.list_permissions(query, page)

    async def get_permission(self, permission_id: int) -> Permission:
        permission = await self.store.get_permission(permission_id)
        if permission is None:
            raise NotFoundError("Permission not found")
        return permission

    async def create_permission(self, data: NewPermission) -> Permission:
        module = PermissionModule(data.module)
        action = PermissionAction(data.action)
        name = _validate_name(data.name or permission_name(module, action))

        async def _work(tx: StoreTransaction) -> Permission:
            if await tx.permission_name_taken(name):
                raise ConflictError("Permission already exists", detail={"field": "name"})
            return await tx.insert_permission(
                Permission(
                    id=0,
                    name=name,
                    module=module,
                    action=action,
                    description=(data.description or "").strip() or None,
                )
            )

        permission = await self.coordinator.run("create permission", _work)
        logger.info("permission_created", permission_id=permission.id, name=name)
        return permission

    async def update_permission(
        self, permission_id: int, patch: PermissionPatch
    ) -> Permission:
        name = _validate_name(patch.name) if patch.name is not UNSET else UNSET

        async def _work(tx: StoreTransaction) -> Permission:
            permission = await tx.get_permission(permission_id, for_update=True)
            if permission is None:
                raise NotFoundError("Permission not found")
            if name is not UNSET and name != permission.name:
                if await tx.permission_name_taken(name, exclude_id=permission_id):
                    raise ConflictError("Permission already exists", detail={"field": "name"})
                permission.name = name
            if patch.module is not UNSET:
                if patch.module is None:
                    raise BadRequestError("Permission module is required")
                permission.module = PermissionModule(patch.module)
            if patch.action is not UNSET:
                if patch.action is None:
                    raise BadRequestError("Permission action is required")
                permission.action = PermissionAction(patch.action)
            if patch.description is not UNSET:
                permission.description = (patch.description or "").strip() or None
            return await tx.update_permission(permission)

        permission = await self.coordinator.run("update permission", _work)
        self.cache.invalidate_all()
        logger.info("permission_updated", permission_id=permission_id)
        return permission

    async def delete_permission(self, permission_id: int) -> None:
        async def _work(tx: StoreTransaction) -> None:
            permission = await tx.get_permission(permission_id, for_update=True)
            if permission is None:
                raise NotFoundError("Permission not found")
            if await tx.count_permission_roles(permission_id):
                raise BadRequestError("Cannot delete permission assigned to roles")
            await tx.delete_permission(permission_id)

        await self.coordinator.run("delete permission", _work)
        self.cache.invalidate_all()
        logger.info("permission_deleted", permission_id=permission_id)
