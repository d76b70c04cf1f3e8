from __future__ import annotations

from dataclasses import dataclass, field, fields
from functools import partial
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from rbac_admin.config import Settings
from rbac_admin.logging import get_logger
from rbac_admin.service.authorization import is_superadmin
from rbac_admin.service.cache import EntityCache, load_user
from rbac_admin.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from rbac_admin.service.passwords import (
    PasswordManager,
    check_password_strength,
    generate_password,
)
from rbac_admin.service.transactions import (
    MutationCoordinator,
    Store,
    StoreTransaction,
    contained,
)
from rbac_admin.service.validation import (
    format_missing_ids,
    validate_email,
    validate_user_input,
)
from rbac_admin.storage.models import Page, Role, User, UserQuery

logger = get_logger(__name__)

MAX_BULK_IDS = 100
BULK_BATCH_SIZE = 10
DISPLAY_NAME_MAX_LENGTH = 100


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class UserPatch:
    """Partial update; fields left as ``UNSET`` are not touched.

    ``None`` is a real value and is applied as given for the nullable
    profile fields.
    """

    first_name: Any = UNSET
    last_name: Any = UNSET
    display_name: Any = UNSET
    email: Any = UNSET
    phone: Any = UNSET
    avatar_url: Any = UNSET
    is_active: Any = UNSET
    is_verified: Any = UNSET
    role_ids: Any = UNSET

    def provided(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }


_NULLABLE_TEXT = ("first_name", "last_name", "display_name", "phone", "avatar_url")
_FLAGS = ("is_active", "is_verified")


@dataclass
class NewUser:
    username: str
    email: str
    role_ids: List[int] = field(default_factory=list)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    phone: Optional[str] = None
    send_password_email: bool = False


@dataclass
class BulkResult:
    success: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class PasswordNotifier(Protocol):
    """Out-of-band delivery of generated passwords and reset tokens."""

    async def send_generated_password(self, user: User, password: str) -> None: ...

    async def send_reset_token(self, user: User, token: str) -> None: ...


class LogOnlyPasswordNotifier:
    """Records that delivery was requested; no transport is configured."""

    async def send_generated_password(self, user: User, password: str) -> None:
        logger.info("generated_password_delivery_requested", user_id=user.id)

    async def send_reset_token(self, user: User, token: str) -> None:
        logger.info("reset_token_delivery_requested", user_id=user.id)


def _clean(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _dedupe_ids(ids: Sequence[int]) -> List[int]:
    return list(dict.fromkeys(ids))


def validate_patch(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Shape checks on a patch before any transaction is opened."""
    cleaned: Dict[str, Any] = {}
    for name, value in changes.items():
        if name in _NULLABLE_TEXT:
            cleaned[name] = _clean(value)
        elif name == "email":
            if not value or not str(value).strip():
                raise BadRequestError("Email cannot be empty")
            validate_email(value)
            cleaned[name] = value.strip().lower()
        elif name in _FLAGS:
            if not isinstance(value, bool):
                raise ValidationError(
                    f"{name} must be a boolean",
                    errors=[{"field": name, "message": "must be a boolean"}],
                )
            cleaned[name] = value
        elif name == "role_ids":
            if not value:
                raise BadRequestError("At least one role is required")
            cleaned[name] = _dedupe_ids(value)
        else:
            raise ValidationError(
                f"Field cannot be updated: {name}",
                errors=[{"field": name, "message": "cannot be updated"}],
            )
    return cleaned


async def resolve_roles(
    tx: StoreTransaction, role_ids: Sequence[int], actor: User
) -> List[Role]:
    roles = await tx.get_roles(role_ids)
    found = {role.id for role in roles}
    missing = [rid for rid in role_ids if rid not in found]
    if missing:
        raise BadRequestError(
            f"Roles not found: {format_missing_ids(missing)}",
            detail={"missing_role_ids": missing},
        )
    if not is_superadmin(actor) and any(role.is_system for role in roles):
        raise ForbiddenError("Only superadmin can assign system roles")
    return roles


async def load_actor(tx: StoreTransaction, actor_id: int) -> User:
    actor = await tx.get_user(actor_id)
    if actor is None:
        raise NotFoundError("Acting user not found")
    return actor


def guard_superadmin_account(target: User, actor: User) -> None:
    if target.is_superadmin_account and not is_superadmin(actor):
        raise ForbiddenError("Only superadmin can modify the superadmin account")


class UserService:
    """User administration: every write goes through the mutation coordinator
    and invalidates the cache only after the transaction has committed."""

    def __init__(
        self,
        store: Store,
        cache: EntityCache,
        settings: Settings,
        *,
        passwords: PasswordManager,
        coordinator: MutationCoordinator,
        notifier: Optional[PasswordNotifier] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.passwords = passwords
        self.coordinator = coordinator
        self.notifier = notifier or LogOnlyPasswordNotifier()

    async def create_user(self, data: NewUser, actor_id: int) -> Tuple[User, Optional[str]]:
        """Create a user with a generated password.

        Returns the user and the plaintext password, or ``None`` in its place
        when the password was handed to the notifier instead.
        """
        validate_user_input(data.username, data.email)
        role_ids = _dedupe_ids(data.role_ids or [])
        if not role_ids:
            raise BadRequestError("At least one role is required")
        username = data.username.strip().lower()
        email = data.email.strip().lower()
        first_name = _clean(data.first_name)
        last_name = _clean(data.last_name)
        display_name = _clean(data.display_name) or (
            f"{first_name or ''} {last_name or ''}".strip()[:DISPLAY_NAME_MAX_LENGTH] or username
        )

        password = generate_password()
        password_hash = self.passwords.hash(password)

        async def _work(tx: StoreTransaction) -> User:
            actor = await load_actor(tx, actor_id)
            if await tx.username_taken(username):
                raise ConflictError("Username already exists", detail={"field": "username"})
            if await tx.email_taken(email):
                raise ConflictError("Email already exists", detail={"field": "email"})
            await resolve_roles(tx, role_ids, actor)
            user = User(
                id=0,
                username=username,
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                display_name=display_name,
                phone=_clean(data.phone),
                is_verified=False,
                is_active=True,
                created_by_id=actor.id,
                updated_by_id=actor.id,
            )
            return await tx.insert_user(user, role_ids)

        user = await self.coordinator.run("create user", _work)
        self.cache.invalidate_user()
        self.cache.after_mutation(role_ids=role_ids)
        logger.info("user_created", user_id=user.id, actor_id=actor_id, role_ids=role_ids)

        if data.send_password_email:
            await self.notifier.send_generated_password(user, password)
            return user, None
        return user, password

    async def list_users(self, query: UserQuery, page: Page) -> Tuple[List[User], int]:
        return await self.store.list_users(query, page)

    async def get_user(self, user_id: int) -> User:
        user = await load_user(self.cache, self.store, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _apply_update(
        self,
        tx: StoreTransaction,
        user_id: int,
        changes: Dict[str, Any],
        actor: User,
    ) -> User:
        target = await tx.get_user(user_id, for_update=True)
        if target is None:
            raise NotFoundError("User not found")
        guard_superadmin_account(target, actor)

        role_ids: Optional[List[int]] = None
        for name, value in changes.items():
            if name == "role_ids":
                role_ids = value
            elif name == "email":
                if value != target.email and await tx.email_taken(value, exclude_id=target.id):
                    raise ConflictError("Email already exists", detail={"field": "email"})
                target.email = value
            else:
                setattr(target, name, value)

        if role_ids is not None:
            await resolve_roles(tx, role_ids, actor)
        target.updated_by_id = actor.id
        return await tx.update_user(target, role_ids)

    async def update_user(self, user_id: int, patch: UserPatch, actor_id: int) -> User:
        changes = validate_patch(patch.provided())

        async def _work(tx: StoreTransaction) -> User:
            actor = await load_actor(tx, actor_id)
            return await self._apply_update(tx, user_id, changes, actor)

        user = await self.coordinator.run("update user", _work)
        self.cache.invalidate_user(user_id)
        if "role_ids" in changes:
            # Assigned user counts moved on old and new roles
            self.cache.invalidate_role()
        logger.info("user_updated", user_id=user_id, actor_id=actor_id, fields=sorted(changes))
        return user

    async def delete_user(self, user_id: int, actor_id: int) -> None:
        if user_id == actor_id:
            raise ForbiddenError("Cannot delete your own account")

        async def _work(tx: StoreTransaction) -> List[int]:
            target = await tx.get_user(user_id, for_update=True)
            if target is None:
                raise NotFoundError("User not found")
            if target.is_superadmin_account:
                raise ForbiddenError("Cannot delete super admin user")
            await tx.delete_user(user_id)
            return target.role_ids

        role_ids = await self.coordinator.run("delete user", _work)
        # createdBy/updatedBy of other users may have been nulled
        self.cache.invalidate_user()
        self.cache.after_mutation(role_ids=role_ids)
        logger.info("user_deleted", user_id=user_id, actor_id=actor_id)

    async def reset_password(self, user_id: int, new_password: str, actor_id: int) -> None:
        problem = check_password_strength(new_password or "", self.settings.password_min_length)
        if problem:
            raise BadRequestError(problem)
        password_hash = self.passwords.hash(new_password)

        async def _work(tx: StoreTransaction) -> None:
            actor = await load_actor(tx, actor_id)
            target = await tx.get_user(user_id, for_update=True)
            if target is None:
                raise NotFoundError("User not found")
            guard_superadmin_account(target, actor)
            target.password_hash = password_hash
            target.login_attempts = 0
            target.is_locked = False
            target.updated_by_id = actor.id
            await tx.update_user(target)

        await self.coordinator.run("reset password", _work)
        self.cache.invalidate_user(user_id)
        logger.info("user_password_reset", user_id=user_id, actor_id=actor_id)

    async def unlock_user(self, user_id: int, actor_id: int) -> User:
        async def _work(tx: StoreTransaction) -> User:
            actor = await load_actor(tx, actor_id)
            target = await tx.get_user(user_id, for_update=True)
            if target is None:
                raise NotFoundError("User not found")
            guard_superadmin_account(target, actor)
            target.login_attempts = 0
            target.is_locked = False
            target.updated_by_id = actor.id
            return await tx.update_user(target)

        user = await self.coordinator.run("unlock user", _work)
        self.cache.invalidate_user(user_id)
        logger.info("user_unlocked", user_id=user_id, actor_id=actor_id)
        return user

    async def bulk_update(
        self, user_ids: Sequence[int], patch: UserPatch, actor_id: int
    ) -> BulkResult:
        """Apply one patch to many users, isolating each id in a savepoint.

        Failed ids are reported in the result; the ids that succeeded are
        committed together when the outer transaction ends.
        """
        ids = _dedupe_ids(user_ids or [])
        if not ids:
            raise BadRequestError("User ids are required")
        if len(ids) > MAX_BULK_IDS:
            raise BadRequestError(f"Cannot update more than {MAX_BULK_IDS} users at once")
        changes = validate_patch(patch.provided())
        if not changes:
            raise BadRequestError("No fields to update")

        async def _work(tx: StoreTransaction) -> Tuple[BulkResult, List[int]]:
            actor = await load_actor(tx, actor_id)
            result = BulkResult()
            updated: List[int] = []
            for start in range(0, len(ids), BULK_BATCH_SIZE):
                for user_id in ids[start : start + BULK_BATCH_SIZE]:
                    error = await contained(
                        tx,
                        partial(self._apply_update, user_id=user_id, changes=changes, actor=actor),
                    )
                    if error is None:
                        result.success += 1
                        updated.append(user_id)
                    else:
                        result.failed += 1
                        result.errors.append({"id": user_id, "error": error})
            return result, updated

        result, updated = await self.coordinator.run("bulk update users", _work)
        self.cache.after_mutation(user_ids=updated)
        if "role_ids" in changes and updated:
            self.cache.invalidate_role()
        logger.info(
            "users_bulk_updated",
            actor_id=actor_id,
            success=result.success,
            failed=result.failed,
        )
        return result
