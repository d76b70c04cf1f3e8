import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rbac_admin.config import Settings  # noqa: E402
from rbac_admin.service.auth import AuthService  # noqa: E402
from rbac_admin.service.cache import EntityCache  # noqa: E402
from rbac_admin.service.passwords import PasswordManager  # noqa: E402
from rbac_admin.service.permissions import PermissionService  # noqa: E402
from rbac_admin.service.roles import RoleService  # noqa: E402
from rbac_admin.service.runtime import reset_runtime_for_tests  # noqa: E402
from rbac_admin.service.seed import ensure_superadmin, seed_catalogue  # noqa: E402
from rbac_admin.service.tokens import TokenService  # noqa: E402
from rbac_admin.service.transactions import MutationCoordinator  # noqa: E402
from rbac_admin.service.users import UserService  # noqa: E402
from rbac_admin.storage.memory import MemoryStore  # noqa: E402

ADMIN_PASSWORD = "Admin123!"
TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingNotifier:
    """Collects what would have been delivered out of band."""

    def __init__(self):
        self.passwords = []
        self.reset_tokens = []

    async def send_generated_password(self, user, password):
        self.passwords.append((user.id, password))

    async def send_reset_token(self, user, token):
        self.reset_tokens.append((user.id, token))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, test_mode=True, use_memory_store=True)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def passwords():
    """Argon2id with minimal cost so the suite stays fast."""
    return PasswordManager(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def cache():
    return EntityCache(user_capacity=50, role_capacity=10)


@pytest.fixture
def coordinator(memory_store):
    return MutationCoordinator(memory_store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def seeded_store(memory_store, passwords):
    """Catalogue, built-in roles (superadmin=1, admin=2, user=3) and the superadmin user."""
    asyncio.run(seed_catalogue(memory_store))
    asyncio.run(ensure_superadmin(memory_store, passwords, password=ADMIN_PASSWORD))
    return memory_store


@pytest.fixture
def superadmin(seeded_store):
    return asyncio.run(seeded_store.get_user_by_username("superadmin"))


@pytest.fixture
def auth_service(seeded_store, cache, settings, passwords, coordinator, notifier):
    return AuthService(
        seeded_store,
        cache,
        settings,
        tokens=TokenService(settings),
        passwords=passwords,
        coordinator=coordinator,
        notifier=notifier,
    )


@pytest.fixture
def user_service(seeded_store, cache, settings, passwords, coordinator, notifier):
    return UserService(
        seeded_store,
        cache,
        settings,
        passwords=passwords,
        coordinator=coordinator,
        notifier=notifier,
    )


@pytest.fixture
def role_service(seeded_store, cache, coordinator):
    return RoleService(seeded_store, cache, coordinator=coordinator)


@pytest.fixture
def permission_service(seeded_store, cache, coordinator):
    return PermissionService(seeded_store, cache, coordinator=coordinator)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
