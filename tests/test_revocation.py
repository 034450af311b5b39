import asyncio

import pytest

from tenantguard.service.errors import AuthenticationError
from tenantguard.service.revocation import RevocationRegistry, revocation_key
from tenantguard.storage.redis_cache import MemoryCache


class _FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class _BrokenCache:
    async def exists(self, key):
        raise ConnectionError("redis down")

    async def set_flag(self, key, value, ttl_seconds):
        raise ConnectionError("redis down")


class _SlowCache:
    async def exists(self, key):
        await asyncio.sleep(5)
        return False


def test_revocation_key_format():
    assert revocation_key("eyJabc.def.ghi") == "blacklist:eyJabc.def.ghi"


async def test_revoked_value_is_reported(cache):
    registry = RevocationRegistry(cache)

    await registry.revoke("raw-credential", 3600)

    assert await registry.is_revoked("raw-credential") is True
    assert await registry.is_revoked("other-credential") is False
    assert "blacklist:raw-credential" in cache.keys()


async def test_entry_expires_after_ttl():
    clock = _FakeClock()
    registry = RevocationRegistry(MemoryCache(clock=clock))

    await registry.revoke("short-lived", 60)
    assert await registry.is_revoked("short-lived") is True

    clock.now += 61
    assert await registry.is_revoked("short-lived") is False


async def test_empty_value_is_never_revoked(cache):
    registry = RevocationRegistry(cache)

    await registry.revoke("", 60)

    assert await registry.is_revoked("") is False
    assert list(cache.keys()) == []


async def test_unreachable_registry_fails_closed():
    registry = RevocationRegistry(_BrokenCache())

    with pytest.raises(AuthenticationError):
        await registry.is_revoked("anything")


async def test_slow_registry_fails_closed():
    registry = RevocationRegistry(_SlowCache(), timeout=0.05)

    with pytest.raises(AuthenticationError):
        await registry.is_revoked("anything")


async def test_revoke_surfaces_backend_errors():
    registry = RevocationRegistry(_BrokenCache())

    with pytest.raises(ConnectionError):
        await registry.revoke("anything", 60)
