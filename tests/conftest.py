import asyncio
import base64
import inspect
import os
import sys
from collections import Counter
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantguard.service.tokens import KeyPair  # noqa: E402

# Signing keys are generated once per run and handed to every runtime through
# the environment so resets do not pay for RSA key generation.
_ACCESS_KEY = KeyPair.generate()
_REFRESH_KEY = KeyPair.generate()

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL keeps the cache and revocation registry in process
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("ACCESS_TOKEN", base64.b64encode(_ACCESS_KEY.private_pem.encode()).decode())
os.environ.setdefault("REFRESH_TOKEN", base64.b64encode(_REFRESH_KEY.private_pem.encode()).decode())

import pytest  # noqa: E402

from tenantguard.service.auth import AuthService  # noqa: E402
from tenantguard.service.revocation import RevocationRegistry  # noqa: E402
from tenantguard.service.roles import RoleService  # noqa: E402
from tenantguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantguard.service.tokens import TokenService  # noqa: E402
from tenantguard.service.users import UserService  # noqa: E402
from tenantguard.storage.cached import CachedRoleStore, CachedUserStore  # noqa: E402
from tenantguard.storage.memory import MemoryRoleStore, MemoryStore  # noqa: E402
from tenantguard.storage.redis_cache import MemoryCache  # noqa: E402

DEFAULT_PASSWORD = "s3cret-pass"


class CountingStore:
    """Wraps an async store and counts calls per method name."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = Counter()

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        async def _counted(*args, **kwargs):
            self.calls[name] += 1
            return await attr(*args, **kwargs)

        return _counted


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def key_pairs():
    return _ACCESS_KEY, _REFRESH_KEY


@pytest.fixture
def token_service(key_pairs):
    access, refresh = key_pairs
    return TokenService(access, refresh)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def user_backend(memory_store):
    return CountingStore(memory_store)


@pytest.fixture
def role_backend(memory_store):
    return CountingStore(MemoryRoleStore(memory_store))


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def cached_users(user_backend, cache):
    return CachedUserStore(user_backend, cache, ttl_seconds=600, populate_timeout=1.0)


@pytest.fixture
def cached_roles(role_backend, cache, cached_users):
    return CachedRoleStore(
        role_backend, cache, holders=cached_users, ttl_seconds=600, populate_timeout=1.0
    )


@pytest.fixture
def revocations(cache):
    return RevocationRegistry(cache, timeout=1.0)


@pytest.fixture
def auth_service(cached_users, token_service, revocations):
    return AuthService(cached_users, token_service, revocations, operation_timeout=1.0)


@pytest.fixture
def user_service(cached_users, cached_roles):
    return UserService(cached_users, cached_roles)


@pytest.fixture
def role_service(cached_roles):
    return RoleService(cached_roles)


@pytest.fixture
def make_role(role_service):
    async def _make(name="viewers", permissions=(), enabled=True):
        return await role_service.create_role(
            name=name, permissions=list(permissions), enabled=enabled
        )

    return _make


@pytest.fixture
def make_user(user_service):
    """Create a user and provision its password; returns the stored user."""

    async def _make(
        username="alice01",
        *,
        name="Alice Liddell",
        email=None,
        password=DEFAULT_PASSWORD,
        status=True,
        roles=(),
    ):
        email = email or f"{username}@example.com"
        user = await user_service.create_user(
            name=name,
            username=username,
            email=email,
            status=status,
            role_ids=[role.id for role in roles],
        )
        if password is not None:
            await user_service.set_password(email, password, password)
        return await user_service.get_user(user.id)

    return _make


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
