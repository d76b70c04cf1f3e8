from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from rbac_admin.config import Settings, get_settings, reset_settings_cache
from rbac_admin.logging import get_logger
from rbac_admin.service.auth import AuthService
from rbac_admin.service.cache import EntityCache
from rbac_admin.service.passwords import PasswordManager
from rbac_admin.service.permissions import PermissionService
from rbac_admin.service.roles import RoleService
from rbac_admin.service.seed import (
    check_bootstrap_password,
    ensure_superadmin,
    seed_catalogue,
)
from rbac_admin.service.tokens import TokenService
from rbac_admin.service.transactions import MutationCoordinator, Store
from rbac_admin.service.users import LogOnlyPasswordNotifier, PasswordNotifier, UserService
from rbac_admin.storage.memory import MemoryStore
from rbac_admin.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> Store:
    if settings.use_memory_store:
        return MemoryStore()
    return PostgresStore(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )


class Runtime:
    """Owns the store, the entity cache and the services built on them.

    One runtime serves one application. The cache lives and dies with it and
    is handed to each service explicitly.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        notifier: Optional[PasswordNotifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = store or build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=self.store.kind)

        self.cache = EntityCache(
            user_capacity=self.settings.user_cache_capacity,
            role_capacity=self.settings.role_cache_capacity,
        )
        self.tokens = TokenService(self.settings)
        self.passwords = PasswordManager()
        self.notifier = notifier or LogOnlyPasswordNotifier()
        self.coordinator = MutationCoordinator(
            self.store,
            retry_attempts=self.settings.transaction_retry_attempts,
            retry_delay=self.settings.transaction_retry_delay_ms / 1000,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            passwords=self.passwords,
            coordinator=self.coordinator,
            notifier=self.notifier,
        )
        self.users = UserService(
            self.store,
            self.cache,
            self.settings,
            passwords=self.passwords,
            coordinator=self.coordinator,
            notifier=self.notifier,
        )
        self.roles = RoleService(self.store, self.cache, coordinator=self.coordinator)
        self.permissions = PermissionService(
            self.store, self.cache, coordinator=self.coordinator
        )

    async def start(self) -> None:
        await self.store.open()
        if self.settings.seed_on_startup:
            await seed_catalogue(self.store)
            if self.settings.admin_password:
                password = check_bootstrap_password(
                    self.settings.admin_password,
                    production=self.settings.is_production,
                )
                await ensure_superadmin(
                    self.store,
                    self.passwords,
                    username=self.settings.admin_username,
                    email=self.settings.admin_email,
                    password=password,
                )
        logger.info("runtime_started", store_type=self.store.kind)

    async def close(self) -> None:
        self.cache.close()
        await self.store.close()
        logger.info("runtime_closed", store_type=self.store.kind)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Replace the process runtime with a fresh one; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
