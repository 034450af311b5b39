"""Storage contracts and helpers shared between memory and postgres implementations.

The cached decorators in ``tenantguard.storage.cached`` wrap any object that
satisfies these protocols, so the memory store, the postgres store and the
cached stores are interchangeable from the service layer's point of view.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

from tenantguard.storage.models import AuditLog, Role, User

USER_SORT_FIELDS = ("name", "username", "email", "created_at", "updated_at")
ROLE_SORT_FIELDS = ("name", "created_at", "updated_at")


@dataclass
class ListFilter:
    search: str = ""
    sort: str = "name"
    order: str = "asc"
    page: int = 0
    limit: int = 0

    def pagination(self) -> Tuple[bool, int, int]:
        """Return ``(enabled, offset, limit)``; paging is off when limit is 0."""

        if self.limit <= 0:
            return False, 0, 0
        page = max(self.page, 1)
        return True, (page - 1) * self.limit, self.limit

    def normalized_order(self) -> str:
        return "desc" if (self.order or "").lower() == "desc" else "asc"


@dataclass
class UserFilter(ListFilter):
    status: Optional[bool] = None
    role_id: Optional[str] = None

    def normalized_sort(self) -> str:
        return self.sort if self.sort in USER_SORT_FIELDS else "name"


@dataclass
class RoleFilter(ListFilter):
    enabled: Optional[bool] = None

    def normalized_sort(self) -> str:
        return self.sort if self.sort in ROLE_SORT_FIELDS else "name"


def fold_text(value: str) -> str:
    """Lowercase and strip accents for search comparisons."""

    normalized = unicodedata.normalize("NFKD", value or "")
    return "".join(ch for ch in normalized if not unicodedata.combining(ch)).lower()


def matches_search(search: str, *values: str) -> bool:
    if not search:
        return True
    needle = fold_text(search)
    return any(needle in fold_text(value) for value in values)


class UserStore(Protocol):
    """Authoritative persistence for users and their owned credentials.

    Lookups return ``None`` when the user does not exist. Writes raise
    ``ConstraintViolation`` on duplicate username/email or unknown role ids,
    and must never leave the user and its credential out of step.
    """

    async def find_by_id(self, user_id: str) -> Optional[User]: ...

    async def find_by_username(self, username: str) -> Optional[User]: ...

    async def find_by_email(self, email: str) -> Optional[User]: ...

    async def find_by_token(self, token: str) -> Optional[User]: ...

    async def find_all(self, flt: Optional[UserFilter] = None) -> List[User]: ...

    async def count(self, flt: Optional[UserFilter] = None) -> int: ...

    async def create(self, user: User) -> User: ...

    async def update(self, user: User) -> User: ...

    async def delete(self, ids: Sequence[str]) -> int: ...


class RoleStore(Protocol):
    """Authoritative persistence for roles.

    ``delete`` raises ``ConstraintViolation`` (kind ``foreign_key``) when any
    of the roles is still assigned to a user, deleting nothing.
    """

    async def find_by_id(self, role_id: str) -> Optional[Role]: ...

    async def find_by_name(self, name: str) -> Optional[Role]: ...

    async def find_all(self, flt: Optional[RoleFilter] = None) -> List[Role]: ...

    async def count(self, flt: Optional[RoleFilter] = None) -> int: ...

    async def create(self, role: Role) -> Role: ...

    async def update(self, role: Role) -> Role: ...

    async def delete(self, ids: Sequence[str]) -> int: ...


class AuditStore(Protocol):
    """Append-only record of administrative writes."""

    async def record_audit(self, entry: AuditLog) -> None: ...

    async def find_audit(
        self, *, resource: Optional[str] = None, resource_id: Optional[str] = None
    ) -> List[AuditLog]: ...


__all__ = [
    "ListFilter",
    "UserFilter",
    "RoleFilter",
    "UserStore",
    "RoleStore",
    "AuditStore",
    "fold_text",
    "matches_search",
]
