"""Unit tests for the auth service.

Tests for:
- Login, lockout and the no-enumeration rule
- Token refresh and bearer authentication
- Password change
- Password reset via emailed token
"""

import asyncio

import pytest
from conftest import ADMIN_PASSWORD

from rbac_admin.service.auth import (
    ACCOUNT_DEACTIVATED,
    ACCOUNT_LOCKED,
    INVALID_CREDENTIALS,
)
from rbac_admin.service.errors import (
    AuthenticationError,
    BadRequestError,
    TokenKindMismatch,
)
from rbac_admin.service.users import NewUser, UserPatch
from rbac_admin.storage.models import TokenKind


@pytest.fixture
def member(user_service, superadmin):
    """A regular user with the ``user`` role and its generated password."""
    return asyncio.run(
        user_service.create_user(
            NewUser(username="jane", email="jane@example.com", role_ids=[3]),
            superadmin.id,
        )
    )


class TestLogin:
    """Tests for the login state machine."""

    async def test_superadmin_login(self, auth_service):
        result = await auth_service.login("superadmin", ADMIN_PASSWORD)

        assert result.roles == ["superadmin"]
        assert "user.read" in result.permissions
        assert result.tokens["token_type"] == "Bearer"
        assert result.user.login_attempts == 0
        assert result.user.last_login_at is not None

    async def test_username_lookup_is_case_insensitive(self, auth_service):
        result = await auth_service.login("SuperAdmin", ADMIN_PASSWORD)
        assert result.user.username == "superadmin"

    async def test_unknown_user_and_wrong_password_look_identical(self, auth_service):
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("nobody", ADMIN_PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await auth_service.login("superadmin", "Wrong123!")

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_wrong_password_increments_attempts(self, auth_service, seeded_store, superadmin):
        with pytest.raises(AuthenticationError):
            await auth_service.login("superadmin", "Wrong123!")

        stored = await seeded_store.get_user(superadmin.id)
        assert stored.login_attempts == 1
        assert stored.is_locked is False

    async def test_success_resets_attempts(self, auth_service, seeded_store, superadmin):
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await auth_service.login("superadmin", "Wrong123!")

        await auth_service.login("superadmin", ADMIN_PASSWORD)
        assert (await seeded_store.get_user(superadmin.id)).login_attempts == 0

    async def test_lockout_after_max_attempts(self, auth_service, seeded_store, settings, member):
        user, password = member
        for _ in range(settings.max_login_attempts):
            with pytest.raises(AuthenticationError) as excinfo:
                await auth_service.login("jane", "Wrong123!")
            assert excinfo.value.message == INVALID_CREDENTIALS

        stored = await seeded_store.get_user(user.id)
        assert stored.is_locked is True
        assert stored.login_attempts == settings.max_login_attempts

        # Even the correct password is refused now, and nothing else changes
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.login("jane", password)
        assert excinfo.value.message == ACCOUNT_LOCKED
        assert (await seeded_store.get_user(user.id)).login_attempts == settings.max_login_attempts

    async def test_deactivated_account_checked_before_password(
        self, auth_service, user_service, seeded_store, superadmin, member
    ):
        user, password = member
        await user_service.update_user(user.id, UserPatch(is_active=False), superadmin.id)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.login("jane", "Wrong123!")
        assert excinfo.value.message == ACCOUNT_DEACTIVATED
        assert (await seeded_store.get_user(user.id)).login_attempts == 0

    async def test_concurrent_failures_are_all_counted(self, auth_service, seeded_store, member):
        user, _ = member

        async def attempt():
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane", "Wrong123!")

        await asyncio.gather(*(attempt() for _ in range(3)))
        assert (await seeded_store.get_user(user.id)).login_attempts == 3


class TestTokens:
    """Refresh and bearer authentication."""

    async def test_refresh_issues_new_pair(self, auth_service):
        result = await auth_service.login("superadmin", ADMIN_PASSWORD)
        pair = await auth_service.refresh(result.tokens["refresh_token"])

        claims = auth_service.tokens.verify(pair["access_token"], TokenKind.ACCESS)
        assert claims.username == "superadmin"

    async def test_access_token_cannot_refresh(self, auth_service):
        result = await auth_service.login("superadmin", ADMIN_PASSWORD)
        with pytest.raises(TokenKindMismatch):
            await auth_service.refresh(result.tokens["access_token"])

    async def test_refresh_rejected_once_locked(
        self, auth_service, seeded_store, settings, member
    ):
        user, password = member
        tokens = (await auth_service.login("jane", password)).tokens
        for _ in range(settings.max_login_attempts):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane", "Wrong123!")

        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.refresh(tokens["refresh_token"])
        assert excinfo.value.message == ACCOUNT_LOCKED

    async def test_authenticate_bearer_header(self, auth_service, superadmin):
        result = await auth_service.login("superadmin", ADMIN_PASSWORD)
        user = await auth_service.authenticate(f"bearer {result.tokens['access_token']}")
        assert user.id == superadmin.id

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer   "])
    def test_missing_bearer_token(self, auth_service, header):
        with pytest.raises(AuthenticationError) as excinfo:
            asyncio.run(auth_service.authenticate(header))
        assert excinfo.value.message == "Access token is required"

    async def test_refresh_token_is_not_an_access_token(self, auth_service):
        result = await auth_service.login("superadmin", ADMIN_PASSWORD)
        with pytest.raises(TokenKindMismatch):
            await auth_service.authenticate(f"Bearer {result.tokens['refresh_token']}")

    async def test_authenticate_rejects_deactivated_user(
        self, auth_service, user_service, superadmin, member
    ):
        user, password = member
        token = (await auth_service.login("jane", password)).tokens["access_token"]
        await user_service.update_user(user.id, UserPatch(is_active=False), superadmin.id)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.authenticate(f"Bearer {token}")
        assert excinfo.value.message == ACCOUNT_DEACTIVATED


class TestChangePassword:
    async def test_change_password(self, auth_service, superadmin):
        await auth_service.change_password(superadmin.id, ADMIN_PASSWORD, "N3w-Passw0rd!")

        await auth_service.login("superadmin", "N3w-Passw0rd!")
        with pytest.raises(AuthenticationError):
            await auth_service.login("superadmin", ADMIN_PASSWORD)

    async def test_wrong_current_password(self, auth_service, superadmin):
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.change_password(superadmin.id, "Wrong123!", "N3w-Passw0rd!")
        assert excinfo.value.message == "Current password is incorrect"

    async def test_new_password_must_differ(self, auth_service, superadmin):
        with pytest.raises(BadRequestError):
            await auth_service.change_password(superadmin.id, ADMIN_PASSWORD, ADMIN_PASSWORD)

    async def test_weak_new_password(self, auth_service, superadmin):
        with pytest.raises(BadRequestError) as excinfo:
            await auth_service.change_password(superadmin.id, ADMIN_PASSWORD, "weakpassword1!")
        assert excinfo.value.message == "Password must contain at least one uppercase letter"


class TestPasswordReset:
    """Reset tokens are delivered out of band and unlock the account."""

    async def test_unknown_email_is_silent(self, auth_service, notifier):
        await auth_service.request_password_reset("ghost@example.com")
        assert notifier.reset_tokens == []
        assert await auth_service.issue_reset_token("ghost@example.com") is None

    async def test_reset_flow_unlocks_account(
        self, auth_service, notifier, seeded_store, settings, member
    ):
        user, _ = member
        for _ in range(settings.max_login_attempts):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane", "Wrong123!")

        await auth_service.request_password_reset("JANE@example.com")
        [(user_id, token)] = notifier.reset_tokens
        assert user_id == user.id

        await auth_service.reset_password_with_token(token, "Fresh-Passw0rd!")

        stored = await seeded_store.get_user(user.id)
        assert stored.is_locked is False
        assert stored.login_attempts == 0
        await auth_service.login("jane", "Fresh-Passw0rd!")

    async def test_access_token_cannot_reset(self, auth_service):
        result = await auth_service.login("superadmin", ADMIN_PASSWORD)
        with pytest.raises(TokenKindMismatch):
            await auth_service.reset_password_with_token(
                result.tokens["access_token"], "Fresh-Passw0rd!"
            )

    async def test_token_stale_after_email_change(
        self, auth_service, user_service, superadmin, member
    ):
        user, _ = member
        token = await auth_service.issue_reset_token("jane@example.com")
        await user_service.update_user(
            user.id, UserPatch(email="jane.doe@example.com"), superadmin.id
        )

        with pytest.raises(AuthenticationError):
            await auth_service.reset_password_with_token(token, "Fresh-Passw0rd!")
