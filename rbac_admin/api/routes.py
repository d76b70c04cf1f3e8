from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from rbac_admin.api.schemas import (
    AdminResetPasswordRequest,
    BulkUpdateResponse,
    BulkUpdateUsersRequest,
    ChangePasswordRequest,
    CreatePermissionRequest,
    CreateRoleRequest,
    CreateUserRequest,
    CreateUserResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    PaginatedEnvelope,
    Pagination,
    PermissionResponse,
    RefreshTokenRequest,
    ResetPasswordRequest,
    RoleResponse,
    TokenPair,
    UpdatePermissionRequest,
    UpdateRoleRequest,
    UpdateUserRequest,
    UserResponse,
    dump,
)
from rbac_admin.logging import get_logger
from rbac_admin.service.authorization import MatchMode, assert_permission, assert_role
from rbac_admin.service.permissions import NewPermission, PermissionPatch
from rbac_admin.service.roles import NewRole, RolePatch
from rbac_admin.service.runtime import Runtime, get_runtime
from rbac_admin.service.users import NewUser, UserPatch
from rbac_admin.service.validation import as_utc, validate_pagination
from rbac_admin.storage.common import (
    PERMISSION_SORT_FIELDS,
    ROLE_SORT_FIELDS,
    USER_SORT_FIELDS,
    total_pages,
)
from rbac_admin.storage.models import (
    SUPERADMIN,
    Page,
    PermissionAction,
    PermissionModule,
    PermissionQuery,
    RoleQuery,
    User,
    UserQuery,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def current_runtime(request: Request) -> Runtime:
    return getattr(request.app.state, "runtime", None) or get_runtime()


async def get_current_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(current_runtime),
) -> User:
    return await runtime.auth.authenticate(authorization)


def require_permissions(*names: str, mode: MatchMode = MatchMode.ANY):
    """Dependency that resolves the caller and checks ``names`` against it."""

    async def _dependency(user: User = Depends(get_current_user)) -> User:
        assert_permission(user, names, mode)
        return user

    return _dependency


def require_roles(*names: str):
    async def _dependency(user: User = Depends(get_current_user)) -> User:
        assert_role(user, names)
        return user

    return _dependency


def _paginated(items: list, total: int, page: Page, message: str) -> PaginatedEnvelope:
    return PaginatedEnvelope(
        message=message,
        data=items,
        pagination=Pagination(
            page=page.page,
            limit=page.limit,
            total=total,
            total_pages=total_pages(total, page.limit),
        ),
    )


# Auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(current_runtime)):
    result = await runtime.auth.login(body.username, body.password)
    data = LoginResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokenPair(**result.tokens),
        roles=result.roles,
        permissions=result.permissions,
    )
    return Envelope(message="Login successful", data=dump(data))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    body: RefreshTokenRequest, runtime: Runtime = Depends(current_runtime)
):
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(message="Token refreshed successfully", data=dump(TokenPair(**tokens)))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(current_runtime),
):
    profile = await runtime.auth.get_profile(user.id)
    return Envelope(
        message="Profile retrieved successfully", data=dump(UserResponse.from_user(profile))
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(current_runtime),
):
    await runtime.auth.change_password(user.id, body.current_password, body.new_password)
    return Envelope(message="Password changed successfully")


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(current_runtime),
):
    await runtime.auth.logout(user.id)
    return Envelope(message="Logout successful")


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest, runtime: Runtime = Depends(current_runtime)
):
    await runtime.auth.request_password_reset(body.email)
    return Envelope(message="If the email is registered, a reset link has been sent")


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password_with_token(
    body: ResetPasswordRequest, runtime: Runtime = Depends(current_runtime)
):
    await runtime.auth.reset_password_with_token(body.token, body.new_password)
    return Envelope(message="Password reset successfully")


# Users


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateUserRequest,
    actor: User = Depends(require_permissions("user.create")),
    runtime: Runtime = Depends(current_runtime),
):
    user, password = await runtime.users.create_user(
        NewUser(
            username=body.username,
            email=body.email,
            role_ids=body.role_ids,
            first_name=body.first_name,
            last_name=body.last_name,
            display_name=body.display_name,
            phone=body.phone,
            send_password_email=body.send_password_email,
        ),
        actor.id,
    )
    data = CreateUserResponse(user=UserResponse.from_user(user), generated_password=password)
    return Envelope(message="User created successfully", status_code=201, data=dump(data))


@router.get("/users", response_model=PaginatedEnvelope, tags=["users"])
async def list_users(
    page: int = Query(1),
    limit: int = Query(10),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    search: Optional[str] = Query(None, max_length=100),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    is_verified: Optional[bool] = Query(None, alias="isVerified"),
    is_locked: Optional[bool] = Query(None, alias="isLocked"),
    role_ids: Optional[List[int]] = Query(None, alias="roleIds"),
    created_after: Optional[datetime] = Query(None, alias="createdAfter"),
    created_before: Optional[datetime] = Query(None, alias="createdBefore"),
    _: User = Depends(require_permissions("user.read")),
    runtime: Runtime = Depends(current_runtime),
):
    paging = validate_pagination(page, limit, sort_by, sort_order, sort_fields=USER_SORT_FIELDS)
    query = UserQuery(
        search=(search or "").strip() or None,
        is_active=is_active,
        is_verified=is_verified,
        is_locked=is_locked,
        role_ids=role_ids or [],
        created_after=as_utc(created_after),
        created_before=as_utc(created_before),
    )
    users, total = await runtime.users.list_users(query, paging)
    return _paginated(
        [dump(UserResponse.from_user(u)) for u in users],
        total,
        paging,
        "Users retrieved successfully",
    )


@router.patch("/users/bulk", response_model=Envelope, tags=["users"])
async def bulk_update_users(
    body: BulkUpdateUsersRequest,
    actor: User = Depends(require_permissions("user.update")),
    runtime: Runtime = Depends(current_runtime),
):
    result = await runtime.users.bulk_update(
        body.user_ids, UserPatch(**body.updates.changes()), actor.id
    )
    data = BulkUpdateResponse(
        success=result.success, failed=result.failed, errors=result.errors
    )
    return Envelope(message="Bulk update completed", data=dump(data))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: int = Path(..., ge=1),
    _: User = Depends(require_permissions("user.read")),
    runtime: Runtime = Depends(current_runtime),
):
    user = await runtime.users.get_user(user_id)
    return Envelope(message="User retrieved successfully", data=dump(UserResponse.from_user(user)))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    user_id: int = Path(..., ge=1),
    actor: User = Depends(require_permissions("user.update")),
    runtime: Runtime = Depends(current_runtime),
):
    user = await runtime.users.update_user(user_id, UserPatch(**body.changes()), actor.id)
    return Envelope(message="User updated successfully", data=dump(UserResponse.from_user(user)))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: int = Path(..., ge=1),
    actor: User = Depends(require_permissions("user.delete")),
    runtime: Runtime = Depends(current_runtime),
):
    await runtime.users.delete_user(user_id, actor.id)
    return Envelope(message="User deleted successfully")


@router.post("/users/{user_id}/reset-password", response_model=Envelope, tags=["users"])
async def reset_user_password(
    body: AdminResetPasswordRequest,
    user_id: int = Path(..., ge=1),
    actor: User = Depends(require_permissions("user.update")),
    runtime: Runtime = Depends(current_runtime),
):
    await runtime.users.reset_password(user_id, body.new_password, actor.id)
    return Envelope(message="Password reset successfully")


@router.post("/users/{user_id}/unlock", response_model=Envelope, tags=["users"])
async def unlock_user(
    user_id: int = Path(..., ge=1),
    actor: User = Depends(require_permissions("user.update")),
    runtime: Runtime = Depends(current_runtime),
):
    user = await runtime.users.unlock_user(user_id, actor.id)
    return Envelope(message="User unlocked successfully", data=dump(UserResponse.from_user(user)))


# Roles


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: CreateRoleRequest,
    actor: User = Depends(require_permissions("role.create")),
    runtime: Runtime = Depends(current_runtime),
):
    role = await runtime.roles.create_role(
        NewRole(
            name=body.name,
            description=body.description,
            is_system=body.is_system,
            permission_ids=body.permission_ids,
        ),
        actor.id,
    )
    return Envelope(
        message="Role created successfully", status_code=201, data=dump(RoleResponse.from_role(role))
    )


@router.get("/roles", response_model=PaginatedEnvelope, tags=["roles"])
async def list_roles(
    page: int = Query(1),
    limit: int = Query(10),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    name: Optional[str] = Query(None, max_length=100),
    is_system: Optional[bool] = Query(None, alias="isSystem"),
    permission: Optional[str] = Query(None, max_length=100),
    _: User = Depends(require_permissions("role.read")),
    runtime: Runtime = Depends(current_runtime),
):
    paging = validate_pagination(page, limit, sort_by, sort_order, sort_fields=ROLE_SORT_FIELDS)
    query = RoleQuery(
        name=(name or "").strip() or None,
        is_system=is_system,
        permission=(permission or "").strip() or None,
    )
    roles, total = await runtime.roles.list_roles(query, paging)
    return _paginated(
        [dump(RoleResponse.from_role(r)) for r in roles],
        total,
        paging,
        "Roles retrieved successfully",
    )


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(
    role_id: int = Path(..., ge=1),
    _: User = Depends(require_permissions("role.read")),
    runtime: Runtime = Depends(current_runtime),
):
    role = await runtime.roles.get_role(role_id)
    return Envelope(message="Role retrieved successfully", data=dump(RoleResponse.from_role(role)))


@router.get("/roles/{role_id}/users", response_model=Envelope, tags=["roles"])
async def list_role_users(
    role_id: int = Path(..., ge=1),
    _: User = Depends(require_permissions("role.read", "user.read", mode=MatchMode.ALL)),
    runtime: Runtime = Depends(current_runtime),
):
    users = await runtime.roles.list_role_users(role_id)
    return Envelope(
        message="Role users retrieved successfully",
        data=[dump(UserResponse.from_user(u)) for u in users],
    )


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    body: UpdateRoleRequest,
    role_id: int = Path(..., ge=1),
    actor: User = Depends(require_permissions("role.update")),
    runtime: Runtime = Depends(current_runtime),
):
    role = await runtime.roles.update_role(role_id, RolePatch(**body.changes()), actor.id)
    return Envelope(message="Role updated successfully", data=dump(RoleResponse.from_role(role)))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: int = Path(..., ge=1),
    actor: User = Depends(require_permissions("role.delete")),
    runtime: Runtime = Depends(current_runtime),
):
    await runtime.roles.delete_role(role_id, actor.id)
    return Envelope(message="Role deleted successfully")


# Permissions


@router.get("/permissions", response_model=PaginatedEnvelope, tags=["permissions"])
async def list_permissions(
    page: int = Query(1),
    limit: int = Query(10),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    name: Optional[str] = Query(None, max_length=100),
    module: Optional[PermissionModule] = Query(None),
    action: Optional[PermissionAction] = Query(None),
    _: User = Depends(require_permissions("permission.read")),
    runtime: Runtime = Depends(current_runtime),
):
    paging = validate_pagination(
        page, limit, sort_by, sort_order, sort_fields=PERMISSION_SORT_FIELDS
    )
    query = PermissionQuery(name=(name or "").strip() or None, module=module, action=action)
    permissions, total = await runtime.permissions.list_permissions(query, paging)
    return _paginated(
        [dump(PermissionResponse.from_permission(p)) for p in permissions],
        total,
        paging,
        "Permissions retrieved successfully",
    )


@router.get("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def get_permission(
    permission_id: int = Path(..., ge=1),
    _: User = Depends(require_permissions("permission.read")),
    runtime: Runtime = Depends(current_runtime),
):
    permission = await runtime.permissions.get_permission(permission_id)
    return Envelope(
        message="Permission retrieved successfully",
        data=dump(PermissionResponse.from_permission(permission)),
    )


@router.post(
    "/permissions", response_model=Envelope, status_code=201, tags=["permissions"]
)
async def create_permission(
    body: CreatePermissionRequest,
    _: User = Depends(require_roles(SUPERADMIN)),
    runtime: Runtime = Depends(current_runtime),
):
    permission = await runtime.permissions.create_permission(
        NewPermission(
            module=body.module,
            action=body.action,
            name=body.name,
            description=body.description,
        )
    )
    return Envelope(
        message="Permission created successfully",
        status_code=201,
        data=dump(PermissionResponse.from_permission(permission)),
    )


@router.put("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def update_permission(
    body: UpdatePermissionRequest,
    permission_id: int = Path(..., ge=1),
    _: User = Depends(require_roles(SUPERADMIN)),
    runtime: Runtime = Depends(current_runtime),
):
    permission = await runtime.permissions.update_permission(
        permission_id, PermissionPatch(**body.changes())
    )
    return Envelope(
        message="Permission updated successfully",
        data=dump(PermissionResponse.from_permission(permission)),
    )


@router.delete("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def delete_permission(
    permission_id: int = Path(..., ge=1),
    _: User = Depends(require_roles(SUPERADMIN)),
    runtime: Runtime = Depends(current_runtime),
):
    await runtime.permissions.delete_permission(permission_id)
    return Envelope(message="Permission deleted successfully")
