"""Bootstrap data: the permission catalogue, the built-in roles and the
superadmin account."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from rbac_admin.logging import get_logger
from rbac_admin.service.errors import BadRequestError
from rbac_admin.service.passwords import PasswordManager, check_password_strength
from rbac_admin.service.permissions import permission_name
from rbac_admin.service.transactions import MutationCoordinator, Store, StoreTransaction
from rbac_admin.service.validation import validate_user_input
from rbac_admin.storage.models import (
    SUPERADMIN,
    Permission,
    PermissionAction,
    PermissionModule,
    Role,
    User,
)

logger = get_logger(__name__)

DEFAULT_ADMIN_PASSWORD = "Admin123!"

ADMIN_EXCLUDED_MODULES = (PermissionModule.PERMISSION, PermissionModule.SYSTEM)

BUILTIN_ROLES = (
    (SUPERADMIN, "Full access to every resource", True),
    ("admin", "Manages users, roles and content", False),
    ("user", "Read-only access", False),
)


def catalogue() -> List[Tuple[str, PermissionModule, PermissionAction]]:
    return [
        (permission_name(module, action), module, action)
        for module in PermissionModule
        for action in PermissionAction
    ]


def _grants(role_name: str, permissions: List[Permission]) -> List[int]:
    if role_name == SUPERADMIN:
        return [p.id for p in permissions]
    if role_name == "admin":
        return [p.id for p in permissions if p.module not in ADMIN_EXCLUDED_MODULES]
    return [p.id for p in permissions if p.action == PermissionAction.READ]


async def seed_catalogue(store: Store) -> Dict[str, int]:
    """Create missing permissions and built-in roles. Safe to run repeatedly.

    Existing roles keep their grants, except ``superadmin`` which is topped up
    to hold every catalogue permission.
    """

    async def _work(tx: StoreTransaction) -> Dict[str, int]:
        summary = {"permissions_created": 0, "roles_created": 0}
        permissions: List[Permission] = []
        for name, module, action in catalogue():
            existing = await tx.get_permission_by_name(name)
            if existing is None:
                existing = await tx.insert_permission(
                    Permission(
                        id=0,
                        name=name,
                        module=module,
                        action=action,
                        description=f"{action.value.capitalize()} {module.value} records",
                    )
                )
                summary["permissions_created"] += 1
            permissions.append(existing)

        for role_name, description, is_system in BUILTIN_ROLES:
            grants = _grants(role_name, permissions)
            role = await tx.get_role_by_name(role_name)
            if role is None:
                await tx.insert_role(
                    Role(id=0, name=role_name, description=description, is_system=is_system),
                    grants,
                )
                summary["roles_created"] += 1
            elif role_name == SUPERADMIN and set(grants) - set(role.permission_ids):
                merged = list(dict.fromkeys(role.permission_ids + grants))
                await tx.update_role(role, merged)
        return summary

    summary = await MutationCoordinator(store).run("seed catalogue", _work)
    logger.info("catalogue_seeded", **summary)
    return summary


def check_bootstrap_password(password: Optional[str], *, production: bool) -> str:
    """The well-known development password is refused in production."""
    if not password:
        raise BadRequestError("An admin password is required")
    if production and password == DEFAULT_ADMIN_PASSWORD:
        raise BadRequestError("The default admin password cannot be used in production")
    return password


async def ensure_superadmin(
    store: Store,
    passwords: PasswordManager,
    username: str = SUPERADMIN,
    email: str = "superadmin@example.com",
    password: Optional[str] = None,
) -> Tuple[User, bool]:
    """Return the superadmin user, creating it if absent. The flag tells
    whether a new account was created."""
    validate_user_input(username, email)
    problem = check_password_strength(password or "")
    if problem:
        raise BadRequestError(problem)
    password_hash = passwords.hash(password or "")

    async def _work(tx: StoreTransaction) -> Tuple[User, bool]:
        existing = await tx.get_user_by_username(username)
        if existing is not None:
            return existing, False
        role = await tx.get_role_by_name(SUPERADMIN)
        if role is None:
            raise BadRequestError("The superadmin role is missing; seed the catalogue first")
        user = User(
            id=0,
            username=username,
            email=email,
            password_hash=password_hash,
            first_name="Super",
            last_name="Admin",
            display_name="Super Admin",
            is_verified=True,
            is_active=True,
        )
        return await tx.insert_user(user, [role.id]), True

    user, created = await MutationCoordinator(store).run("create superadmin", _work)
    logger.info("superadmin_ensured", user_id=user.id, created=created)
    return user, created
