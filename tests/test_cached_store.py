"""Read-through caching and write invalidation for the user and role stores."""

import asyncio

from tenantguard.storage.cached import CachedRoleStore, CachedUserStore, cache_key
from tenantguard.storage.models import Role, User
from tenantguard.storage.redis_cache import MemoryCache


class _BrokenCache:
    async def get_json(self, key):
        raise ConnectionError("redis down")

    async def set_json(self, key, payload, ttl_seconds):
        raise ConnectionError("redis down")

    async def delete(self, *keys):
        raise ConnectionError("redis down")


class _HangingCache(MemoryCache):
    async def set_json(self, key, payload, ttl_seconds):
        await asyncio.sleep(10)


def _new_user(username="bob0001", roles=()):
    return User.new("Bob Builder", username, f"{username}@example.com", roles=list(roles))


class TestRoleReadThrough:
    async def test_second_read_is_served_from_cache(self, cached_roles, role_backend):
        role = await cached_roles.create(Role.new("viewers", ["users:view"]))

        first = await cached_roles.find_by_id(role.id)
        await cached_roles.drain()
        second = await cached_roles.find_by_id(role.id)

        assert first.name == second.name == "viewers"
        assert second.permissions == ["users:view"]
        assert role_backend.calls["find_by_id"] == 1

    async def test_update_is_visible_immediately(self, cached_roles):
        role = await cached_roles.create(Role.new("viewers", ["users:view"]))
        await cached_roles.find_by_id(role.id)
        await cached_roles.drain()

        role.permissions = ["users:view", "users:edit"]
        role.enabled = False
        await cached_roles.update(role)
        refreshed = await cached_roles.find_by_id(role.id)

        assert refreshed.permissions == ["users:view", "users:edit"]
        assert refreshed.enabled is False

    async def test_rename_drops_old_name_key(self, cached_roles, cache):
        role = await cached_roles.create(Role.new("viewers", []))
        await cached_roles.find_by_name("viewers")
        await cached_roles.drain()
        assert cache_key("role", "name", "viewers") in cache.keys()

        role.name = "watchers"
        await cached_roles.update(role)

        assert cache_key("role", "name", "viewers") not in cache.keys()
        assert await cached_roles.find_by_name("viewers") is None

    async def test_delete_invalidates_id_key(self, cached_roles, cache):
        role = await cached_roles.create(Role.new("viewers", []))
        await cached_roles.find_by_id(role.id)
        await cached_roles.drain()

        await cached_roles.delete([role.id])

        assert cache_key("role", "id", role.id) not in cache.keys()
        assert await cached_roles.find_by_id(role.id) is None

    async def test_misses_are_not_cached(self, cached_roles, role_backend, cache):
        assert await cached_roles.find_by_name("nobody") is None
        await cached_roles.drain()
        assert await cached_roles.find_by_name("nobody") is None

        assert role_backend.calls["find_by_name"] == 2
        assert list(cache.keys()) == []

    async def test_listing_is_not_cached(self, cached_roles, role_backend):
        await cached_roles.create(Role.new("viewers", []))

        await cached_roles.find_all()
        await cached_roles.find_all()

        assert role_backend.calls["find_all"] == 2


class TestUserReadThrough:
    async def test_every_dimension_is_cached(self, cached_users, user_backend, cache):
        user = _new_user()
        user.credential.set_token("session-ref")
        await cached_users.create(user)

        await cached_users.find_by_id(user.id)
        await cached_users.find_by_username(user.username)
        await cached_users.find_by_email(user.email)
        await cached_users.find_by_token("session-ref")
        await cached_users.drain()

        assert set(cache.keys()) == {
            cache_key("user", "id", user.id),
            cache_key("user", "username", user.username),
            cache_key("user", "email", user.email),
            cache_key("user", "token", "session-ref"),
        }

        hit = await cached_users.find_by_token("session-ref")
        assert hit.id == user.id
        assert user_backend.calls["find_by_token"] == 1

    async def test_update_invalidates_previous_dimensions(self, cached_users, cache):
        user = _new_user()
        user.credential.set_token("old-ref")
        await cached_users.create(user)
        await cached_users.find_by_token("old-ref")
        await cached_users.find_by_email(user.email)
        await cached_users.drain()

        user.credential.set_token("new-ref")
        user.email = "bob.new@example.com"
        await cached_users.update(user)

        assert list(cache.keys()) == []
        assert await cached_users.find_by_token("old-ref") is None
        assert (await cached_users.find_by_token("new-ref")).email == "bob.new@example.com"

    async def test_delete_invalidates_every_dimension(self, cached_users, cache):
        user = _new_user()
        user.credential.set_token("ref")
        await cached_users.create(user)
        await cached_users.find_by_username(user.username)
        await cached_users.find_by_token("ref")
        await cached_users.drain()

        removed = await cached_users.delete([user.id])

        assert removed == 1
        assert list(cache.keys()) == []
        assert await cached_users.find_by_username(user.username) is None

    async def test_cached_projection_keeps_roles(self, cached_users, cached_roles):
        role = await cached_roles.create(Role.new("viewers", ["users:view"]))
        user = await cached_users.create(_new_user(roles=[role]))

        await cached_users.find_by_id(user.id)
        await cached_users.drain()
        cached = await cached_users.find_by_id(user.id)

        assert [r.name for r in cached.roles] == ["viewers"]
        assert cached.roles[0].permissions == ["users:view"]


class TestCacheFailures:
    async def test_broken_cache_never_fails_reads_or_writes(self, memory_store):
        users = CachedUserStore(memory_store, _BrokenCache(), populate_timeout=0.05)
        user = await users.create(_new_user())

        found = await users.find_by_id(user.id)
        await users.drain()
        user.name = "Robert Builder"
        updated = await users.update(user)
        removed = await users.delete([user.id])

        assert found.id == user.id
        assert updated.name == "Robert Builder"
        assert removed == 1

    async def test_slow_population_does_not_block_reads(self, memory_store):
        from tenantguard.storage.memory import MemoryRoleStore

        roles = CachedRoleStore(
            MemoryRoleStore(memory_store), _HangingCache(), populate_timeout=0.05
        )
        role = await roles.create(Role.new("viewers", []))

        found = await asyncio.wait_for(roles.find_by_id(role.id), timeout=1.0)
        await roles.drain()

        assert found.id == role.id

    async def test_corrupt_entry_falls_back_to_store(self, cached_roles, cache):
        role = await cached_roles.create(Role.new("viewers", []))
        await cache.set_json(cache_key("role", "id", role.id), {"unexpected": True}, 60)

        found = await cached_roles.find_by_id(role.id)

        assert found.name == "viewers"

    async def test_invalidation_cancels_pending_population(self, cached_roles, cache):
        role = await cached_roles.create(Role.new("viewers", []))
        await cached_roles.find_by_id(role.id)

        role.name = "watchers"
        await cached_roles.update(role)
        await cached_roles.drain()

        assert cache_key("role", "id", role.id) not in cache.keys()
        assert (await cached_roles.find_by_id(role.id)).name == "watchers"


class _ParkedReads:
    """Memory store whose ``find_by_id`` waits on ``release`` once it has read."""

    def __init__(self, inner):
        self.inner = inner
        self.parked = asyncio.Event()
        self.release = asyncio.Event()
        self.hold = False

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def find_by_id(self, user_id):
        found = await self.inner.find_by_id(user_id)
        if self.hold:
            self.hold = False
            self.parked.set()
            await self.release.wait()
        return found


class TestConcurrentWrites:
    async def test_load_overlapping_update_does_not_repopulate(self, memory_store, cache):
        backend = _ParkedReads(memory_store)
        users = CachedUserStore(backend, cache, populate_timeout=1.0)
        user = await users.create(_new_user())

        backend.hold = True
        reader = asyncio.create_task(users.find_by_id(user.id))
        await backend.parked.wait()
        user.name = "Renamed Person"
        await users.update(user)
        backend.release.set()
        stale = await reader
        await users.drain()

        assert stale.name == "Bob Builder"
        assert cache_key("user", "id", user.id) not in cache.keys()
        assert (await users.find_by_id(user.id)).name == "Renamed Person"
        await users.drain()
        assert (await users.find_by_id(user.id)).name == "Renamed Person"

    async def test_load_without_overlap_still_populates(self, memory_store, cache):
        users = CachedUserStore(memory_store, cache, populate_timeout=1.0)
        user = await users.create(_new_user())
        await users.update(user)

        await users.find_by_id(user.id)
        await users.drain()

        assert cache_key("user", "id", user.id) in cache.keys()

    async def test_role_update_invalidates_holders(self, cached_users, cached_roles, cache):
        role = await cached_roles.create(Role.new("viewers", ["users:view"]))
        holder = _new_user("bob0001", roles=[role])
        holder.credential.set_token("bob-ref")
        await cached_users.create(holder)
        other = await cached_users.create(_new_user("carl001"))
        await cached_users.find_by_token("bob-ref")
        await cached_users.find_by_id(other.id)
        await cached_users.drain()

        role.enabled = False
        await cached_roles.update(role)

        assert cache_key("user", "token", "bob-ref") not in cache.keys()
        assert cache_key("user", "id", other.id) in cache.keys()
        assert (await cached_users.find_by_token("bob-ref")).roles[0].enabled is False

    async def test_role_delete_drops_name_key(self, cached_roles, cache):
        role = await cached_roles.create(Role.new("viewers", []))
        await cached_roles.find_by_name("viewers")
        await cached_roles.drain()

        await cached_roles.delete([role.id])

        assert cache_key("role", "name", "viewers") not in cache.keys()
