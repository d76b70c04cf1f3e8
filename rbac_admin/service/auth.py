from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from rbac_admin.config import Settings
from rbac_admin.logging import get_logger
from rbac_admin.service.cache import EntityCache, load_user
from rbac_admin.service.errors import (
    AuthenticationError,
    BadRequestError,
    TokenError,
)
from rbac_admin.service.passwords import PasswordManager, check_password_strength
from rbac_admin.service.tokens import TokenService
from rbac_admin.service.transactions import MutationCoordinator, Store, StoreTransaction
from rbac_admin.service.users import LogOnlyPasswordNotifier, PasswordNotifier
from rbac_admin.storage.models import TokenKind, User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"
INVALID_TOKEN = "Invalid or expired token"
ACCOUNT_DEACTIVATED = "Account is deactivated. Please contact administrator"
ACCOUNT_LOCKED = "Account is locked. Please contact administrator"


@dataclass
class LoginResult:
    user: User
    tokens: dict[str, Any]
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


def check_account_status(user: User) -> None:
    if not user.is_active:
        raise AuthenticationError(ACCOUNT_DEACTIVATED)
    if user.is_locked:
        raise AuthenticationError(ACCOUNT_LOCKED)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthService:
    """Login, token refresh, password change and bearer authentication.

    Login walks ``Unauthenticated -> Verifying -> {Authenticated | Locked |
    Rejected}``: account status is checked before the password, a wrong
    password bumps ``login_attempts`` (locking at ``max_login_attempts``) and
    a right one zeroes it. Unknown usernames and wrong passwords produce the
    same error.
    """

    def __init__(
        self,
        store: Store,
        cache: EntityCache,
        settings: Settings,
        *,
        tokens: TokenService,
        passwords: PasswordManager,
        coordinator: MutationCoordinator,
        notifier: Optional[PasswordNotifier] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.passwords = passwords
        self.coordinator = coordinator
        self.notifier = notifier or LogOnlyPasswordNotifier()
        self.logger = logger
        self._decoy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _burn_verify(self, password: str) -> None:
        # Unknown usernames still pay for one hash verification
        if self._decoy_hash is None:
            self._decoy_hash = self.passwords.hash("decoy-password-for-timing")
        self.passwords.verify(self._decoy_hash, password)

    async def login(self, username: str, password: str) -> LoginResult:
        user = await self.store.get_user_by_username(username or "")
        if user is None:
            self._burn_verify(password or "")
            self.logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError(INVALID_CREDENTIALS)

        check_account_status(user)

        if not self.passwords.verify(user.password_hash, password or ""):
            await self._record_failed_attempt(user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        user = await self._record_successful_login(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            user=user,
            tokens=self.tokens.issue_pair(user),
            roles=user.role_names,
            permissions=user.permission_names,
        )

    async def _record_failed_attempt(self, user_id: int) -> None:
        max_attempts = self.settings.max_login_attempts

        async def _work(tx: StoreTransaction) -> Optional[User]:
            user = await tx.get_user(user_id, for_update=True)
            if user is None:
                return None
            user.login_attempts += 1
            if user.login_attempts >= max_attempts:
                user.is_locked = True
            return await tx.update_user(user)

        updated = await self.coordinator.run("record login attempt", _work)
        self.cache.invalidate_user(user_id)
        if updated is not None:
            self.logger.warning(
                "login_failed",
                reason="bad_password",
                user_id=user_id,
                attempts=updated.login_attempts,
                locked=updated.is_locked,
            )

    async def _record_successful_login(self, user_id: int) -> User:
        now = self._now()

        async def _work(tx: StoreTransaction) -> User:
            user = await tx.get_user(user_id, for_update=True)
            if user is None:
                raise AuthenticationError(INVALID_CREDENTIALS)
            # Locked or deactivated while the password was being checked
            check_account_status(user)
            user.login_attempts = 0
            user.last_login_at = now
            return await tx.update_user(user)

        user = await self.coordinator.run("record login", _work)
        self.cache.invalidate_user(user_id)
        return user

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        # Bypass the cache: lock state must be current when minting tokens
        user = await self.store.get_user(claims.user_id)
        if user is None:
            raise AuthenticationError(INVALID_TOKEN)
        check_account_status(user)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return self.tokens.issue_pair(user)

    async def authenticate(self, authorization: Optional[str]) -> User:
        """Resolve an ``Authorization: Bearer <token>`` header into a user."""
        token = _extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token is required")
        try:
            claims = self.tokens.verify(token, TokenKind.ACCESS)
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=type(exc).__name__)
            raise
        user = await load_user(self.cache, self.store, claims.user_id)
        if user is None:
            raise AuthenticationError(INVALID_TOKEN)
        check_account_status(user)
        return user

    async def get_profile(self, user_id: int) -> User:
        user = await load_user(self.cache, self.store, user_id)
        if user is None:
            raise AuthenticationError(INVALID_TOKEN)
        return user

    def _check_new_password(self, new_password: str) -> None:
        problem = check_password_strength(new_password, self.settings.password_min_length)
        if problem:
            raise BadRequestError(problem)

    async def change_password(
        self, user_id: int, current_password: str, new_password: str
    ) -> None:
        self._check_new_password(new_password)
        if current_password == new_password:
            raise BadRequestError("New password must be different from the current password")

        async def _work(tx: StoreTransaction) -> None:
            user = await tx.get_user(user_id, for_update=True)
            if user is None:
                raise AuthenticationError(INVALID_TOKEN)
            if not self.passwords.verify(user.password_hash, current_password):
                raise AuthenticationError("Current password is incorrect")
            user.password_hash = self.passwords.hash(new_password)
            user.updated_by_id = user_id
            await tx.update_user(user)

        await self.coordinator.run("change password", _work)
        self.cache.invalidate_user(user_id)
        self.logger.info("password_changed", user_id=user_id)

    async def logout(self, user_id: int) -> None:
        # Tokens are stateless; they stay valid until they expire
        self.logger.info("user_logged_out", user_id=user_id)

    async def _reset_candidate(self, email: str) -> Optional[User]:
        user = await self.store.get_user_by_email(email or "")
        if user is None or not user.is_active:
            self.logger.info("password_reset_requested", matched=False)
            return None
        self.logger.info("password_reset_requested", matched=True, user_id=user.id)
        return user

    async def issue_reset_token(self, email: str) -> Optional[str]:
        """Reset token for an active account, or None without saying why."""
        user = await self._reset_candidate(email)
        if user is None:
            return None
        return self.tokens.issue(user, TokenKind.RESET_PASSWORD)

    async def request_password_reset(self, email: str) -> None:
        """Hand a reset token to the notifier; silent for unknown emails."""
        user = await self._reset_candidate(email)
        if user is None:
            return
        token = self.tokens.issue(user, TokenKind.RESET_PASSWORD)
        await self.notifier.send_reset_token(user, token)

    async def reset_password_with_token(self, token: str, new_password: str) -> None:
        claims = self.tokens.verify(token, TokenKind.RESET_PASSWORD)
        self._check_new_password(new_password)

        async def _work(tx: StoreTransaction) -> None:
            user = await tx.get_user(claims.user_id, for_update=True)
            if user is None or user.email != claims.email:
                raise AuthenticationError(INVALID_TOKEN)
            user.password_hash = self.passwords.hash(new_password)
            user.login_attempts = 0
            user.is_locked = False
            user.updated_by_id = user.id
            await tx.update_user(user)

        await self.coordinator.run("reset password", _work)
        self.cache.invalidate_user(claims.user_id)
        self.logger.info("password_reset_completed", user_id=claims.user_id)
