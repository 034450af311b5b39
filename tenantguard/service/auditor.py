"""Fire-and-forget recording of administrative writes.

``Auditor.log`` returns immediately; the entry is persisted by a detached
task bounded by ``timeout`` that outlives the request which produced it.
A failed or slow write is logged and dropped, never surfaced to the caller.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

from tenantguard.logging import get_logger
from tenantguard.storage.common import AuditStore
from tenantguard.storage.models import AuditLog

logger = get_logger(__name__)

DEFAULT_AUDIT_TIMEOUT = 5.0

# request facts stored in their own columns rather than in the metadata blob
_REQUEST_FIELDS = ("ip", "user_agent")


class Auditor:
    def __init__(self, store: AuditStore, *, timeout: float = DEFAULT_AUDIT_TIMEOUT) -> None:
        self.store = store
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    def log(
        self,
        actor_id: Optional[str],
        action: str,
        resource: str,
        resource_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        metadata = dict(metadata or {})
        entry = AuditLog.new(
            actor_id,
            action,
            resource,
            resource_id,
            {key: value for key, value in metadata.items() if key not in _REQUEST_FIELDS},
            ip_address=str(metadata.get("ip") or ""),
            user_agent=str(metadata.get("user_agent") or ""),
        )
        task = asyncio.create_task(self._persist(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return entry

    def log_many(
        self,
        actor_id: Optional[str],
        action: str,
        resource: str,
        resource_ids: List[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[AuditLog]:
        return [
            self.log(actor_id, action, resource, resource_id, metadata)
            for resource_id in resource_ids
        ]

    async def _persist(self, entry: AuditLog) -> None:
        try:
            await asyncio.wait_for(self.store.record_audit(entry), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                "audit_persist_timeout",
                action=entry.action,
                resource=entry.resource,
                resource_id=entry.resource_id,
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.error(
                "audit_persist_failed",
                action=entry.action,
                resource=entry.resource,
                resource_id=entry.resource_id,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for audit writes still in flight."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["Auditor", "DEFAULT_AUDIT_TIMEOUT"]
