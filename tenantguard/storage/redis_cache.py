from __future__ import annotations

import hashlib
import json
import math
import threading
import time
from typing import Any, Dict, Iterable, NamedTuple, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def _decode_json(raw: Optional[str]) -> Optional[Any]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted cache entry - treat as cache miss
        return None


class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: int


def rate_limit_key(key: str) -> str:
    # hashed so caller-supplied parts (client addresses, logins) cannot collide on delimiters
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


class RedisCache:
    """Thin Redis wrapper for entity projections, revocation flags and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # refill and consume in one step so concurrent requests cannot overdraw
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)
if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local retry_after = math.ceil((1 - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(retry_after, 1))
  return {0, math.floor(tokens), retry_after}
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, math.floor(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get_json(self, key: str) -> Optional[Any]:
        return _decode_json(await self.client.get(key))

    async def set_json(self, key: str, payload: Any, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(payload), ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def set_flag(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Take one token from the bucket behind ``key``; ``limit`` tokens refill per window."""

        allowed, remaining, retry_after = await self._token_bucket(
            keys=[rate_limit_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit],
        )
        return RateLimitResult(bool(int(allowed)), int(remaining), int(retry_after))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def get_json(self, key: str) -> Optional[Any]:
        return _decode_json(self.client.get(key))

    async def set_json(self, key: str, payload: Any, ttl_seconds: int) -> None:
        self.client.set(key, json.dumps(payload), ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    async def set_flag(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        allowed, remaining, retry_after = self._token_bucket(
            keys=[rate_limit_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit],
        )
        return RateLimitResult(bool(int(allowed)), int(remaining), int(retry_after))

    async def close(self) -> None:
        self.client.close()


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` with the same TTL semantics.

    Used when Redis is unavailable under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    Entries live in a single process only.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _get_raw(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return value

    def _set_raw(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    def keys(self) -> Iterable[str]:
        return [key for key in list(self._entries) if self._get_raw(key) is not None]

    async def ping(self) -> bool:
        return True

    async def get_json(self, key: str) -> Optional[Any]:
        return _decode_json(self._get_raw(key))

    async def set_json(self, key: str, payload: Any, ttl_seconds: int) -> None:
        self._set_raw(key, json.dumps(payload), ttl_seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    async def set_flag(self, key: str, value: str, ttl_seconds: int) -> None:
        self._set_raw(key, value, ttl_seconds)

    async def exists(self, key: str) -> bool:
        return self._get_raw(key) is not None

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        bucket = rate_limit_key(key)
        with self._lock:
            now = self._clock()
            tokens, last = self._buckets.get(bucket, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < 1:
                self._buckets[bucket] = (tokens, now)
                return RateLimitResult(False, 0, max(1, math.ceil((1 - tokens) / refill_rate)))
            self._buckets[bucket] = (tokens - 1, now)
            return RateLimitResult(True, int(tokens - 1), 0)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._buckets.clear()


__all__ = ["RedisCache", "SyncRedisCache", "MemoryCache", "RateLimitResult", "rate_limit_key"]
