from __future__ import annotations

import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from tenantguard.config import get_settings, reset_settings_cache
from tenantguard.logging import get_logger
from tenantguard.service.auditor import Auditor
from tenantguard.service.auth import AuthService
from tenantguard.service.revocation import RevocationRegistry
from tenantguard.service.roles import RoleService
from tenantguard.service.tokens import TokenService
from tenantguard.service.users import UserService
from tenantguard.storage.cached import CachedRoleStore, CachedUserStore
from tenantguard.storage.memory import MemoryRoleStore, MemoryStore
from tenantguard.storage.postgres import PostgresStore
from tenantguard.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton store, cache and service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store: Any = MemoryStore()
                role_store: Any = MemoryRoleStore(self.store)
            else:
                self.store = PostgresStore(self.settings.database_url)
                role_store = self.store.roles
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Any = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode; TestClient runs each request on its own loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the user cache and the revocation registry; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; cached users and "
                    "revoked credentials live in this process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        cache_options = {
            "ttl_seconds": self.settings.cache_ttl_seconds,
            "populate_timeout": self.settings.cache_populate_timeout_seconds,
        }
        self.users = CachedUserStore(self.store, self.cache, **cache_options)
        self.roles = CachedRoleStore(
            role_store, self.cache, holders=self.users, **cache_options
        )

        access_key, refresh_key = self.settings.load_key_pairs()
        self.tokens = TokenService(
            access_key,
            refresh_key,
            access_ttl=self.settings.access_ttl,
            refresh_ttl=self.settings.refresh_ttl,
        )
        self.revocations = RevocationRegistry(
            self.cache, timeout=self.settings.auth_operation_timeout_seconds
        )
        self.auth = AuthService(
            self.users,
            self.tokens,
            self.revocations,
            operation_timeout=self.settings.auth_operation_timeout_seconds,
        )
        self.user_service = UserService(self.users, self.roles)
        self.role_service = RoleService(self.roles)
        self.auditor = Auditor(self.store, timeout=self.settings.audit_timeout_seconds)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            access_ttl_minutes=self.settings.access_token_expire_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_expire_minutes,
        )

    async def open(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()

    async def close(self) -> None:
        await self.auditor.drain()
        await self.users.drain()
        await self.roles.drain()
        if isinstance(self.store, PostgresStore):
            await self.store.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment; only allowed in TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
