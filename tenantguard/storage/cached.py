"""Read-through cache decorators for the user and role stores.

Keys follow ``{kind}:{dimension}:{value}`` (``user:token:...``,
``role:name:...``). The wrapped store stays the source of truth: reads fall
back to it on any cache miss or cache failure, and every successful write
deletes the affected keys instead of rewriting them.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from tenantguard.logging import get_logger
from tenantguard.storage.common import RoleFilter, RoleStore, UserFilter, UserStore
from tenantguard.storage.models import Role, User

logger = get_logger(__name__)

T = TypeVar("T", Role, User)

DEFAULT_TTL_SECONDS = 600
DEFAULT_POPULATE_TIMEOUT = 5.0


def cache_key(kind: str, dimension: str, value: str) -> str:
    return f"{kind}:{dimension}:{value}"


def user_keys(user: User) -> List[str]:
    keys = [
        cache_key("user", "id", user.id),
        cache_key("user", "username", user.username),
        cache_key("user", "email", user.email),
    ]
    if user.credential.token:
        keys.append(cache_key("user", "token", user.credential.token))
    return keys


def role_keys(role: Role) -> List[str]:
    return [cache_key("role", "id", role.id), cache_key("role", "name", role.name)]


class _ReadThrough:
    """Shared read-through/invalidate machinery.

    Cache population after a miss runs as a detached task bounded by
    ``populate_timeout`` so it neither delays nor fails the read, and is not
    cancelled with the request that triggered it.

    A load that overlaps a write must not repopulate the key with what it
    read. Every key with a store load in progress has a generation; an
    invalidation bumps it and the load only populates when the generation it
    started with is still current. Populations already scheduled are
    cancelled by the invalidation.
    """

    def __init__(
        self,
        cache: Any,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        populate_timeout: float = DEFAULT_POPULATE_TIMEOUT,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.populate_timeout = populate_timeout
        self._inflight: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        # key -> number of store loads in progress, and their shared generation
        self._loading: Dict[str, int] = {}
        self._generations: Dict[str, int] = {}

    async def _cache_get(self, key: str) -> Optional[dict]:
        try:
            return await asyncio.wait_for(
                self.cache.get_json(key), timeout=self.populate_timeout
            )
        except Exception as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None

    async def _populate(self, key: str, payload: dict) -> None:
        try:
            await asyncio.wait_for(
                self.cache.set_json(key, payload, self.ttl_seconds),
                timeout=self.populate_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("cache_populate_failed", key=key, error=str(exc))

    def _schedule_populate(self, key: str, payload: dict) -> None:
        previous = self._inflight.pop(key, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.create_task(self._populate(key, payload))
        self._inflight[key] = task
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if self._inflight.get(key) is finished:
                self._inflight.pop(key, None)

        task.add_done_callback(_done)

    def _begin_load(self, key: str) -> int:
        self._loading[key] = self._loading.get(key, 0) + 1
        return self._generations.get(key, 0)

    def _end_load(self, key: str) -> int:
        generation = self._generations.get(key, 0)
        remaining = self._loading.get(key, 1) - 1
        if remaining > 0:
            self._loading[key] = remaining
        else:
            self._loading.pop(key, None)
            self._generations.pop(key, None)
        return generation

    async def _read(
        self,
        key: str,
        loader: Callable[[], Awaitable[Optional[T]]],
        decode: Callable[[dict], T],
    ) -> Optional[T]:
        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return decode(cached)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("cache_entry_corrupt", key=key, error=str(exc))
        started = self._begin_load(key)
        try:
            entity = await loader()
        finally:
            current = self._end_load(key)
        if entity is not None:
            if current == started:
                self._schedule_populate(key, entity.to_dict())
            else:
                logger.debug("cache_populate_skipped", key=key, reason="invalidated_during_load")
        return entity

    async def _invalidate(self, keys: Sequence[str]) -> None:
        unique = list(dict.fromkeys(keys))
        for key in unique:
            if key in self._loading:
                self._generations[key] = self._generations.get(key, 0) + 1
            pending = self._inflight.pop(key, None)
            if pending is not None:
                pending.cancel()
        if not unique:
            return
        try:
            await asyncio.wait_for(self.cache.delete(*unique), timeout=self.populate_timeout)
        except Exception as exc:
            logger.warning("cache_invalidate_failed", keys=unique, error=str(exc))

    async def drain(self) -> None:
        """Wait for outstanding cache population tasks."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CachedUserStore(_ReadThrough):
    def __init__(self, store: UserStore, cache: Any, **kwargs: Any) -> None:
        super().__init__(cache, **kwargs)
        self.store = store

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self._read(
            cache_key("user", "id", user_id),
            lambda: self.store.find_by_id(user_id),
            User.from_dict,
        )

    async def find_by_username(self, username: str) -> Optional[User]:
        return await self._read(
            cache_key("user", "username", username),
            lambda: self.store.find_by_username(username),
            User.from_dict,
        )

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self._read(
            cache_key("user", "email", email),
            lambda: self.store.find_by_email(email),
            User.from_dict,
        )

    async def find_by_token(self, token: str) -> Optional[User]:
        return await self._read(
            cache_key("user", "token", token),
            lambda: self.store.find_by_token(token),
            User.from_dict,
        )

    async def find_all(self, flt: Optional[UserFilter] = None) -> List[User]:
        return await self.store.find_all(flt)

    async def count(self, flt: Optional[UserFilter] = None) -> int:
        return await self.store.count(flt)

    async def create(self, user: User) -> User:
        created = await self.store.create(user)
        await self._invalidate(user_keys(created))
        return created

    async def update(self, user: User) -> User:
        # Keys for the pre-update username/email/token go stale otherwise.
        previous = await self.store.find_by_id(user.id)
        updated = await self.store.update(user)
        keys = user_keys(updated)
        if previous is not None:
            keys.extend(user_keys(previous))
        await self._invalidate(keys)
        return updated

    async def delete(self, ids: Sequence[str]) -> int:
        keys: List[str] = []
        for user_id in ids:
            keys.append(cache_key("user", "id", user_id))
            previous = await self.store.find_by_id(user_id)
            if previous is not None:
                keys.extend(user_keys(previous))
        removed = await self.store.delete(ids)
        await self._invalidate(keys)
        return removed

    async def invalidate_role_holders(self, role_ids: Sequence[str]) -> int:
        """Drop every cached projection of a user holding one of ``role_ids``.

        User entries embed a copy of each role, so a role write has to reach
        them too. Returns the number of users invalidated.
        """

        keys: List[str] = []
        seen: Set[str] = set()
        for role_id in role_ids:
            for holder in await self.store.find_all(UserFilter(role_id=role_id)):
                if holder.id not in seen:
                    seen.add(holder.id)
                    keys.extend(user_keys(holder))
        await self._invalidate(keys)
        return len(seen)


class CachedRoleStore(_ReadThrough):
    """Cached ``RoleStore``.

    ``holders`` is the cached user store whose entries embed these roles; when
    given, role writes invalidate the users holding the role as well.
    """

    def __init__(
        self,
        store: RoleStore,
        cache: Any,
        *,
        holders: Optional[CachedUserStore] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(cache, **kwargs)
        self.store = store
        self.holders = holders

    async def find_by_id(self, role_id: str) -> Optional[Role]:
        return await self._read(
            cache_key("role", "id", role_id),
            lambda: self.store.find_by_id(role_id),
            Role.from_dict,
        )

    async def find_by_name(self, name: str) -> Optional[Role]:
        return await self._read(
            cache_key("role", "name", name),
            lambda: self.store.find_by_name(name),
            Role.from_dict,
        )

    async def find_all(self, flt: Optional[RoleFilter] = None) -> List[Role]:
        return await self.store.find_all(flt)

    async def count(self, flt: Optional[RoleFilter] = None) -> int:
        return await self.store.count(flt)

    async def create(self, role: Role) -> Role:
        created = await self.store.create(role)
        await self._invalidate(role_keys(created))
        return created

    async def update(self, role: Role) -> Role:
        previous = await self.store.find_by_id(role.id)
        updated = await self.store.update(role)
        keys = role_keys(updated)
        if previous is not None:
            keys.extend(role_keys(previous))
        await self._invalidate(keys)
        if self.holders is not None:
            await self.holders.invalidate_role_holders([updated.id])
        return updated

    async def delete(self, ids: Sequence[str]) -> int:
        keys: List[str] = []
        for role_id in ids:
            keys.append(cache_key("role", "id", role_id))
            previous = await self.store.find_by_id(role_id)
            if previous is not None:
                keys.extend(role_keys(previous))
        removed = await self.store.delete(ids)
        await self._invalidate(keys)
        if self.holders is not None:
            await self.holders.invalidate_role_holders(ids)
        return removed


__all__ = [
    "CachedUserStore",
    "CachedRoleStore",
    "cache_key",
    "user_keys",
    "role_keys",
]
