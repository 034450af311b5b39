from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Union

from tenantguard.logging import get_logger
from tenantguard.service.errors import AuthenticationError

logger = get_logger(__name__)

KEY_PREFIX = "blacklist:"
REVOKED_VALUE = "revoked"


def revocation_key(value: str) -> str:
    return f"{KEY_PREFIX}{value}"


def _ttl_seconds(ttl: Union[timedelta, int, float]) -> int:
    seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
    return max(1, int(seconds))


class RevocationRegistry:
    """TTL-bounded denylist of revoked session references.

    Presence of ``blacklist:{value}`` before it expires means "reject". Any
    backend failure or timeout while checking is reported as an
    ``AuthenticationError`` so the authentication path fails closed.
    """

    def __init__(self, cache: Any, *, timeout: float = 5.0) -> None:
        self.cache = cache
        self.timeout = timeout

    async def revoke(self, value: str, ttl: Union[timedelta, int, float]) -> None:
        if not value:
            return
        await asyncio.wait_for(
            self.cache.set_flag(revocation_key(value), REVOKED_VALUE, _ttl_seconds(ttl)),
            timeout=self.timeout,
        )
        logger.info("credential_revoked", ttl_seconds=_ttl_seconds(ttl))

    async def is_revoked(self, value: str) -> bool:
        if not value:
            return False
        try:
            return await asyncio.wait_for(
                self.cache.exists(revocation_key(value)), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.error("revocation_check_timeout", timeout=self.timeout)
            raise AuthenticationError("authentication unavailable") from exc
        except Exception as exc:
            logger.error("revocation_check_failed", error=str(exc))
            raise AuthenticationError("authentication unavailable") from exc


__all__ = ["RevocationRegistry", "revocation_key", "KEY_PREFIX"]
