"""Role and permission gates.

A user holding the role named exactly ``superadmin`` passes every check.
That name is fixed and cannot be configured.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Set

from rbac_admin.logging import get_logger
from rbac_admin.service.errors import AuthenticationError, ForbiddenError
from rbac_admin.storage.models import SUPERADMIN, User

logger = get_logger(__name__)


class MatchMode(str, Enum):
    ANY = "any"
    ALL = "all"


def is_superadmin(user: User) -> bool:
    return SUPERADMIN in user.role_names


def effective_permissions(user: User) -> Set[str]:
    return set(user.permission_names)


def has_permission(user: User, permission_name: str) -> bool:
    if is_superadmin(user):
        return True
    return permission_name in effective_permissions(user)


def _require_user(user: Optional[User]) -> User:
    if user is None:
        raise AuthenticationError("Authentication required")
    return user


def assert_role(user: Optional[User], role_names: Iterable[str]) -> None:
    user = _require_user(user)
    if is_superadmin(user):
        return
    required = set(role_names)
    if required and not required.intersection(user.role_names):
        logger.info(
            "authorization_denied",
            user_id=user.id,
            reason="role",
            required=sorted(required),
        )
        raise ForbiddenError(
            "Insufficient role privileges",
            detail={"required_roles": sorted(required)},
        )


def assert_permission(
    user: Optional[User],
    permission_names: Iterable[str],
    mode: MatchMode = MatchMode.ANY,
) -> None:
    user = _require_user(user)
    if is_superadmin(user):
        return
    required = set(permission_names)
    if not required:
        return
    granted = effective_permissions(user)
    if mode == MatchMode.ALL:
        missing = required - granted
        if missing:
            logger.info(
                "authorization_denied", user_id=user.id, reason="permission", missing=sorted(missing)
            )
            raise ForbiddenError(
                "Missing required permissions",
                detail={"missing_permissions": sorted(missing)},
            )
        return
    if not required & granted:
        logger.info(
            "authorization_denied", user_id=user.id, reason="permission", required=sorted(required)
        )
        raise ForbiddenError(
            "Insufficient permissions",
            detail={"required_permissions": sorted(required)},
        )
