from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from tenantguard.service.errors import AuthenticationError, ForbiddenError
from tenantguard.storage.models import ROOT_ROLE_NAME, WILDCARD_PERMISSION, User

if TYPE_CHECKING:
    from tenantguard.service.auth import AuthContext

USERS_VIEW = "users:view"
USERS_CREATE = "users:create"
USERS_EDIT = "users:edit"
USERS_DELETE = "users:delete"
ROLES_VIEW = "roles:view"
ROLES_CREATE = "roles:create"
ROLES_EDIT = "roles:edit"
ROLES_DELETE = "roles:delete"

ALL_PERMISSIONS = (
    USERS_VIEW,
    USERS_CREATE,
    USERS_EDIT,
    USERS_DELETE,
    ROLES_VIEW,
    ROLES_CREATE,
    ROLES_EDIT,
    ROLES_DELETE,
)


def authorize(user: Optional[User], permission: str) -> bool:
    """Return True when any enabled role of ``user`` admits ``permission``.

    Disabled roles are skipped entirely. A role admits when it is the root
    role, holds the ``*`` wildcard, or lists the permission verbatim.
    """
    if user is None:
        return False
    for role in user.roles:
        if not role.enabled:
            continue
        if role.is_root or role.grants_all or role.has_permission(permission):
            return True
    return False


def is_authenticated(ctx: Optional["AuthContext"]) -> Optional[User]:
    if ctx is None:
        return None
    return ctx.user


def require_permission(ctx: Optional["AuthContext"], permission: str) -> User:
    """Raise ``AuthenticationError`` without a principal, ``ForbiddenError`` when denied."""
    user = is_authenticated(ctx)
    if user is None:
        raise AuthenticationError("authentication required")
    if not authorize(user, permission):
        raise ForbiddenError("insufficient permissions", detail={"permission": permission})
    return user


def effective_permissions(user: User) -> List[str]:
    """Aggregate permissions across enabled roles, in first-seen order."""
    if any(role.enabled and role.is_root for role in user.roles):
        return [WILDCARD_PERMISSION]
    seen: dict[str, None] = {}
    for role in user.roles:
        if not role.enabled:
            continue
        for permission in role.permissions:
            seen.setdefault(permission, None)
    if WILDCARD_PERMISSION in seen:
        return [WILDCARD_PERMISSION]
    return list(seen)


__all__ = [
    "ALL_PERMISSIONS",
    "ROOT_ROLE_NAME",
    "authorize",
    "is_authenticated",
    "require_permission",
    "effective_permissions",
]
