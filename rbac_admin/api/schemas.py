from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rbac_admin.storage.models import (
    Permission,
    PermissionAction,
    PermissionModule,
    Role,
    User,
    UserStatus,
)

MAX_STRING_LENGTH = 255

# Column widths in schema.sql
EMAIL_MAX_LENGTH = 100
NAME_MAX_LENGTH = 50
DISPLAY_NAME_MAX_LENGTH = 100
PHONE_MAX_LENGTH = 20


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestModel(ApiModel):
    model_config = ConfigDict(extra="forbid")


def dump(model: Optional[BaseModel]) -> Any:
    if model is None:
        return None
    return model.model_dump(by_alias=True, mode="json")


# Envelopes


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    total_pages: int


class Envelope(ApiModel):
    status: Literal["success"] = "success"
    message: str = "Success"
    status_code: int = 200
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=_now)


class PaginatedEnvelope(Envelope):
    pagination: Pagination


class FieldError(ApiModel):
    field: str
    message: str


class ErrorEnvelope(ApiModel):
    status: Literal["error"] = "error"
    message: str
    status_code: int
    errors: Optional[Any] = None
    timestamp: datetime = Field(default_factory=_now)


# Responses


class PermissionResponse(ApiModel):
    id: int
    name: str
    module: PermissionModule
    action: PermissionAction
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            name=permission.name,
            module=permission.module,
            action=permission.action,
            description=permission.description,
            created_at=permission.created_at,
            updated_at=permission.updated_at,
        )


class RoleSummary(ApiModel):
    id: int
    name: str
    description: Optional[str] = None


class RoleResponse(ApiModel):
    id: int
    name: str
    description: Optional[str] = None
    is_system: bool
    user_count: int
    permissions: List[PermissionResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            user_count=role.user_count,
            permissions=[PermissionResponse.from_permission(p) for p in role.permissions],
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class UserResponse(ApiModel):
    """A user as exposed over HTTP; the password hash never leaves the service."""

    id: int
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: str = ""
    display_name: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool
    is_verified: bool
    is_locked: bool
    status: UserStatus
    login_attempts: int
    last_login_at: Optional[datetime] = None
    roles: List[RoleSummary] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            display_name=user.display_name,
            phone=user.phone,
            avatar_url=user.avatar_url,
            is_active=user.is_active,
            is_verified=user.is_verified,
            is_locked=user.is_locked,
            status=user.status,
            login_attempts=user.login_attempts,
            last_login_at=user.last_login_at,
            roles=[
                RoleSummary(id=r.id, name=r.name, description=r.description)
                for r in user.roles
            ],
            permissions=user.permission_names,
            created_by=user.created_by_id,
            updated_by=user.updated_by_id,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenPair(ApiModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(ApiModel):
    user: UserResponse
    tokens: TokenPair
    roles: List[str]
    permissions: List[str]


class CreateUserResponse(ApiModel):
    user: UserResponse
    generated_password: Optional[str] = None


class BulkUpdateError(ApiModel):
    id: int
    error: str


class BulkUpdateResponse(ApiModel):
    success: int
    failed: int
    errors: List[BulkUpdateError] = Field(default_factory=list)


# Requests


class LoginRequest(RequestModel):
    username: str = Field(..., max_length=MAX_STRING_LENGTH)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class RefreshTokenRequest(RequestModel):
    refresh_token: str = Field(..., min_length=1)


class ChangePasswordRequest(RequestModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class ForgotPasswordRequest(RequestModel):
    email: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class ResetPasswordRequest(RequestModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class CreateUserRequest(RequestModel):
    username: str = Field(..., max_length=MAX_STRING_LENGTH)
    email: str = Field(..., max_length=EMAIL_MAX_LENGTH)
    first_name: Optional[str] = Field(None, max_length=NAME_MAX_LENGTH)
    last_name: Optional[str] = Field(None, max_length=NAME_MAX_LENGTH)
    display_name: Optional[str] = Field(None, max_length=DISPLAY_NAME_MAX_LENGTH)
    phone: Optional[str] = Field(None, max_length=PHONE_MAX_LENGTH)
    role_ids: List[int] = Field(default_factory=list)
    send_password_email: bool = False


class UpdateUserRequest(RequestModel):
    """Only the fields present in the body are applied; ``null`` is a value."""

    first_name: Optional[str] = Field(None, max_length=NAME_MAX_LENGTH)
    last_name: Optional[str] = Field(None, max_length=NAME_MAX_LENGTH)
    display_name: Optional[str] = Field(None, max_length=DISPLAY_NAME_MAX_LENGTH)
    email: Optional[str] = Field(None, max_length=EMAIL_MAX_LENGTH)
    phone: Optional[str] = Field(None, max_length=PHONE_MAX_LENGTH)
    avatar_url: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    role_ids: Optional[List[int]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BulkUpdateUsersRequest(RequestModel):
    user_ids: List[int] = Field(..., min_length=1)
    updates: UpdateUserRequest


class AdminResetPasswordRequest(RequestModel):
    new_password: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class CreateRoleRequest(RequestModel):
    name: str = Field(..., max_length=MAX_STRING_LENGTH)
    description: Optional[str] = Field(None, max_length=500)
    is_system: bool = False
    permission_ids: List[int] = Field(default_factory=list)


class UpdateRoleRequest(RequestModel):
    name: Optional[str] = Field(None, max_length=MAX_STRING_LENGTH)
    description: Optional[str] = Field(None, max_length=500)
    is_system: Optional[bool] = None
    permission_ids: Optional[List[int]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CreatePermissionRequest(RequestModel):
    module: PermissionModule
    action: PermissionAction
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class UpdatePermissionRequest(RequestModel):
    name: Optional[str] = Field(None, max_length=100)
    module: Optional[PermissionModule] = None
    action: Optional[PermissionAction] = None
    description: Optional[str] = Field(None, max_length=500)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)
