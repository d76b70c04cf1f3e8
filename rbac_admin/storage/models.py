from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

SUPERADMIN = "superadmin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET_PASSWORD = "reset_password"


class PermissionModule(str, Enum):
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    TOUR = "tour"
    AUTH = "auth"
    SYSTEM = "system"


class PermissionAction(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    LOCKED = "locked"


@dataclass
class Permission:
    id: int
    name: str
    module: PermissionModule
    action: PermissionAction
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: int
    name: str
    description: Optional[str] = None
    is_system: bool = False
    permissions: List[Permission] = field(default_factory=list)
    user_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def permission_ids(self) -> List[int]:
        return [perm.id for perm in self.permissions]


@dataclass
class User:
    """A user row with its roles (and their permissions) attached.

    ``created_by_id``/``updated_by_id`` point at other users by id only;
    they are resolved on demand rather than loaded as nested users.
    """

    id: int
    username: str
    email: str
    password_hash: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool = False
    is_active: bool = True
    is_locked: bool = False
    login_attempts: int = 0
    last_login_at: Optional[datetime] = None
    roles: List[Role] = field(default_factory=list)
    created_by_id: Optional[int] = None
    updated_by_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def role_ids(self) -> List[int]:
        return [role.id for role in self.roles]

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]

    @property
    def permission_names(self) -> List[str]:
        """Effective permission names, de-duplicated, in first-seen order."""
        seen: dict[str, None] = {}
        for role in self.roles:
            for perm in role.permissions:
                seen.setdefault(perm.name, None)
        return list(seen)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def status(self) -> UserStatus:
        if self.is_locked:
            return UserStatus.LOCKED
        if not self.is_active:
            return UserStatus.INACTIVE
        return UserStatus.ACTIVE

    @property
    def is_superadmin_account(self) -> bool:
        return self.username == SUPERADMIN


@dataclass
class Page:
    page: int = 1
    limit: int = 10
    sort_by: str = "createdAt"
    sort_order: str = "DESC"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class UserQuery:
    search: Optional[str] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    is_locked: Optional[bool] = None
    role_ids: List[int] = field(default_factory=list)
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


@dataclass
class RoleQuery:
    name: Optional[str] = None
    is_system: Optional[bool] = None
    permission: Optional[str] = None


@dataclass
class PermissionQuery:
    name: Optional[str] = None
    module: Optional[PermissionModule] = None
    action: Optional[PermissionAction] = None
