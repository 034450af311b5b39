from __future__ import annotations

import copy
import threading
from typing import Dict, List, Optional, Sequence

from tenantguard.logging import get_logger
from tenantguard.storage.common import RoleFilter, UserFilter, matches_search
from tenantguard.storage.errors import FOREIGN_KEY, ConstraintViolation
from tenantguard.storage.models import AuditLog, Credential, Role, User


class MemoryStore:
    """In-process backing store implementing ``UserStore``, ``RoleStore`` and ``AuditStore``.

    Users are kept without their role objects; role membership is stored as
    id links and re-joined on every read so a role edit is visible through
    every user that holds it, as it would be with the relational store.
    Callers always receive copies, never the stored instances.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, List[str]] = {}
        self.audit_logs: List[AuditLog] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def _hydrate(self, user_id: str) -> User:
        stored = self.users[user_id]
        hydrated = copy.deepcopy(stored)
        hydrated.credential = copy.deepcopy(self.credentials[stored.credential.id])
        hydrated.roles = [
            copy.deepcopy(self.roles[role_id])
            for role_id in self.user_roles.get(user_id, [])
            if role_id in self.roles
        ]
        return hydrated

    def _check_user_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.id == user.id:
                continue
            if existing.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == user.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
        for existing in self.credentials.values():
            if existing.id == user.credential.id:
                continue
            if user.credential.token and existing.token == user.credential.token:
                raise ConstraintViolation("token already exists", {"field": "token"})

    def _check_role_links(self, user: User) -> List[str]:
        role_ids: List[str] = []
        for role in user.roles:
            if role.id not in self.roles:
                raise ConstraintViolation(
                    "role does not exist",
                    {"field": "role_ids", "role_id": role.id},
                    kind=FOREIGN_KEY,
                )
            if role.id not in role_ids:
                role_ids.append(role.id)
        return role_ids

    def _find_user(self, predicate) -> Optional[User]:
        with self._data_lock:
            for user_id, user in self.users.items():
                if predicate(user):
                    return self._hydrate(user_id)
            return None

    async def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            if user_id not in self.users:
                return None
            return self._hydrate(user_id)

    async def find_by_username(self, username: str) -> Optional[User]:
        return self._find_user(lambda u: u.username == username)

    async def find_by_email(self, email: str) -> Optional[User]:
        return self._find_user(lambda u: u.email == email)

    async def find_by_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            for user_id, user in self.users.items():
                if self.credentials[user.credential.id].token == token:
                    return self._hydrate(user_id)
            return None

    def _filtered_users(self, flt: Optional[UserFilter]) -> List[User]:
        flt = flt or UserFilter()
        with self._data_lock:
            results = []
            for user_id in self.users:
                user = self._hydrate(user_id)
                if flt.status is not None and user.credential.status != flt.status:
                    continue
                if flt.role_id and flt.role_id not in user.role_ids:
                    continue
                if not matches_search(flt.search, user.name, user.username, user.email):
                    continue
                results.append(user)
        sort_key = flt.normalized_sort()
        results.sort(
            key=lambda u: getattr(u, sort_key),
            reverse=flt.normalized_order() == "desc",
        )
        return results

    async def find_all(self, flt: Optional[UserFilter] = None) -> List[User]:
        results = self._filtered_users(flt)
        enabled, offset, limit = (flt or UserFilter()).pagination()
        if enabled:
            results = results[offset : offset + limit]
        return results

    async def count(self, flt: Optional[UserFilter] = None) -> int:
        return len(self._filtered_users(flt))

    async def create(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            self._check_user_unique(user)
            role_ids = self._check_role_links(user)
            stored = copy.deepcopy(user)
            stored.roles = []
            self.credentials[stored.credential.id] = copy.deepcopy(user.credential)
            self.users[stored.id] = stored
            self.user_roles[stored.id] = role_ids
            return self._hydrate(stored.id)

    async def update(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "id"})
            self._check_user_unique(user)
            role_ids = self._check_role_links(user)
            stored = copy.deepcopy(user)
            stored.roles = []
            previous = self.users[user.id]
            if previous.credential.id != stored.credential.id:
                self.credentials.pop(previous.credential.id, None)
            self.credentials[stored.credential.id] = copy.deepcopy(user.credential)
            self.users[stored.id] = stored
            self.user_roles[stored.id] = role_ids
            return self._hydrate(stored.id)

    async def delete(self, ids: Sequence[str]) -> int:
        removed = 0
        with self._data_lock:
            for user_id in ids:
                user = self.users.pop(user_id, None)
                if user is None:
                    continue
                self.credentials.pop(user.credential.id, None)
                self.user_roles.pop(user_id, None)
                removed += 1
        return removed

    # -- audit -------------------------------------------------------------

    async def record_audit(self, entry: AuditLog) -> None:
        with self._data_lock:
            self.audit_logs.append(copy.deepcopy(entry))

    async def find_audit(
        self, *, resource: Optional[str] = None, resource_id: Optional[str] = None
    ) -> List[AuditLog]:
        """Entries oldest first, optionally narrowed to one resource kind or record."""
        with self._data_lock:
            return [
                copy.deepcopy(entry)
                for entry in self.audit_logs
                if (resource is None or entry.resource == resource)
                and (resource_id is None or entry.resource_id == resource_id)
            ]


class MemoryRoleStore:
    """``RoleStore`` view over a shared :class:`MemoryStore`.

    Role and user lookups share method names (``find_by_id``), so the role
    side is exposed through this thin adapter over the same data and lock.
    """

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def find_by_id(self, role_id: str) -> Optional[Role]:
        with self.store._data_lock:
            role = self.store.roles.get(role_id)
            return copy.deepcopy(role) if role else None

    async def find_by_name(self, name: str) -> Optional[Role]:
        with self.store._data_lock:
            role = next((r for r in self.store.roles.values() if r.name == name), None)
            return copy.deepcopy(role) if role else None

    def _filtered_roles(self, flt: Optional[RoleFilter]) -> List[Role]:
        flt = flt or RoleFilter()
        with self.store._data_lock:
            results = [
                copy.deepcopy(role)
                for role in self.store.roles.values()
                if matches_search(flt.search, role.name)
                and (flt.enabled is None or role.enabled == flt.enabled)
            ]
        sort_key = flt.normalized_sort()
        results.sort(
            key=lambda r: getattr(r, sort_key),
            reverse=flt.normalized_order() == "desc",
        )
        return results

    async def find_all(self, flt: Optional[RoleFilter] = None) -> List[Role]:
        results = self._filtered_roles(flt)
        enabled, offset, limit = (flt or RoleFilter()).pagination()
        if enabled:
            results = results[offset : offset + limit]
        return results

    async def count(self, flt: Optional[RoleFilter] = None) -> int:
        return len(self._filtered_roles(flt))

    def _check_role_unique(self, role: Role) -> None:
        for existing in self.store.roles.values():
            if existing.id != role.id and existing.name == role.name:
                raise ConstraintViolation("role name already exists", {"field": "name"})

    async def create(self, role: Role) -> Role:
        with self.store._data_lock:
            if role.id in self.store.roles:
                raise ConstraintViolation("role already exists", {"field": "id"})
            self._check_role_unique(role)
            self.store.roles[role.id] = copy.deepcopy(role)
            return copy.deepcopy(role)

    async def update(self, role: Role) -> Role:
        with self.store._data_lock:
            if role.id not in self.store.roles:
                raise ConstraintViolation("role does not exist", {"field": "id"})
            self._check_role_unique(role)
            self.store.roles[role.id] = copy.deepcopy(role)
            return copy.deepcopy(role)

    async def delete(self, ids: Sequence[str]) -> int:
        with self.store._data_lock:
            targets = set(ids)
            for user_id, role_ids in self.store.user_roles.items():
                referenced = targets.intersection(role_ids)
                if referenced:
                    raise ConstraintViolation(
                        "role is still assigned to users",
                        {"field": "ids", "role_id": sorted(referenced)[0]},
                        kind=FOREIGN_KEY,
                    )
            removed = 0
            for role_id in ids:
                if self.store.roles.pop(role_id, None) is not None:
                    removed += 1
            return removed


__all__ = ["MemoryStore", "MemoryRoleStore"]
