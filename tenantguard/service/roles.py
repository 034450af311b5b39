from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from tenantguard.logging import get_logger
from tenantguard.service.errors import ConflictError, NotFoundError, ValidationError
from tenantguard.service.pagination import Page
from tenantguard.service.users import constraint_to_error, parse_id
from tenantguard.storage.common import RoleFilter, RoleStore
from tenantguard.storage.errors import FOREIGN_KEY, ConstraintViolation
from tenantguard.storage.models import Role

logger = get_logger(__name__)


@dataclass
class RoleItem:
    id: str
    name: str


class RoleService:
    def __init__(self, roles: RoleStore) -> None:
        self.roles = roles

    async def list_roles(self, flt: Optional[RoleFilter] = None) -> Page[Role]:
        flt = flt or RoleFilter()
        items = await self.roles.find_all(flt)
        total = await self.roles.count(flt)
        return Page.build(items, flt.page, flt.limit, total)

    async def list_items(self, flt: Optional[RoleFilter] = None) -> List[RoleItem]:
        """Unpaged id/name listing for pickers."""

        flt = flt or RoleFilter()
        flt.page = 0
        flt.limit = 0
        return [RoleItem(id=role.id, name=role.name) for role in await self.roles.find_all(flt)]

    async def get_role(self, role_id: str) -> Role:
        role = await self.roles.find_by_id(parse_id(role_id))
        if role is None:
            raise NotFoundError("role not found")
        return role

    @staticmethod
    def _validate(role: Role) -> None:
        errors = role.validation_errors()
        if errors:
            raise ValidationError("invalid role", detail=errors)

    async def create_role(
        self,
        *,
        name: str,
        permissions: Optional[Sequence[str]] = None,
        enabled: bool = True,
    ) -> Role:
        role = Role.new(name, list(permissions or []), enabled=enabled)
        self._validate(role)
        try:
            created = await self.roles.create(role)
        except ConstraintViolation as exc:
            raise constraint_to_error(exc) from exc
        logger.info("role_created", role_id=created.id, name=created.name)
        return created

    async def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Sequence[str]] = None,
        enabled: Optional[bool] = None,
    ) -> Role:
        role = await self.get_role(role_id)
        if name is not None:
            role.name = name
        if permissions is not None:
            role.permissions = list(dict.fromkeys(permissions))
        if enabled is not None:
            role.enabled = enabled
        self._validate(role)
        role.touch()
        try:
            updated = await self.roles.update(role)
        except ConstraintViolation as exc:
            raise constraint_to_error(exc) from exc
        logger.info("role_updated", role_id=updated.id)
        return updated

    async def delete_roles(self, ids: Sequence[str]) -> int:
        """Delete roles; if any is still assigned, nothing is deleted."""

        parsed = [parse_id(value, "ids") for value in ids]
        if not parsed:
            return 0
        try:
            removed = await self.roles.delete(parsed)
        except ConstraintViolation as exc:
            if exc.kind == FOREIGN_KEY:
                raise ConflictError("role is still assigned to users", detail=exc.detail) from exc
            raise constraint_to_error(exc) from exc
        logger.info("roles_deleted", count=removed)
        return removed


__all__ = ["RoleService", "RoleItem"]
