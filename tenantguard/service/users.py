from __future__ import annotations

import uuid
from typing import List, Optional, Sequence

from tenantguard.logging import get_logger
from tenantguard.service.auth import new_session_token
from tenantguard.service.errors import (
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tenantguard.service.pagination import Page
from tenantguard.service.passwords import hash_password
from tenantguard.storage.common import RoleStore, UserFilter, UserStore
from tenantguard.storage.errors import UNIQUE, ConstraintViolation
from tenantguard.storage.models import (
    MAX_PASSWORD_LENGTH,
    MIN_PASSWORD_LENGTH,
    Role,
    User,
)

logger = get_logger(__name__)


def parse_id(value: str, field: str = "id") -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError) as exc:
        raise ValidationError("invalid uuid format", detail={"field": field}) from exc


def constraint_to_error(exc: ConstraintViolation) -> Exception:
    if exc.kind == UNIQUE:
        return ConflictError(exc.message, detail=exc.detail)
    return ValidationError(exc.message, detail=exc.detail)


class UserService:
    """User administration: listing, CRUD and password provisioning."""

    def __init__(self, users: UserStore, roles: RoleStore) -> None:
        self.users = users
        self.roles = roles
        self.logger = logger

    async def list_users(self, flt: Optional[UserFilter] = None) -> Page[User]:
        flt = flt or UserFilter()
        if flt.role_id:
            flt.role_id = parse_id(flt.role_id, "role_id")
        items = await self.users.find_all(flt)
        total = await self.users.count(flt)
        return Page.build(items, flt.page, flt.limit, total)

    async def get_user(self, user_id: str) -> User:
        user = await self.users.find_by_id(parse_id(user_id))
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def _resolve_roles(self, role_ids: Sequence[str]) -> List[Role]:
        roles: List[Role] = []
        for raw in role_ids:
            role = await self.roles.find_by_id(parse_id(raw, "role_ids"))
            if role is None:
                raise ValidationError("role not found", detail={"field": "role_ids", "role_id": raw})
            roles.append(role)
        return roles

    async def _ensure_unique(self, *, email: Optional[str], username: Optional[str]) -> None:
        if email is not None and await self.users.find_by_email(email) is not None:
            raise ConflictError("email already exists", detail={"field": "email"})
        if username is not None and await self.users.find_by_username(username) is not None:
            raise ConflictError("username already exists", detail={"field": "username"})

    @staticmethod
    def _validate(user: User) -> None:
        errors = user.validation_errors()
        if errors:
            raise ValidationError("invalid user", detail=errors)

    async def create_user(
        self,
        *,
        name: str,
        username: str,
        email: str,
        status: bool = True,
        role_ids: Optional[Sequence[str]] = None,
    ) -> User:
        user = User.new(name, username, email, status=status)
        self._validate(user)
        await self._ensure_unique(email=email, username=username)
        for role in await self._resolve_roles(role_ids or []):
            user.add_role(role)
        try:
            created = await self.users.create(user)
        except ConstraintViolation as exc:
            raise constraint_to_error(exc) from exc
        self.logger.info("user_created", user_id=created.id, roles=created.role_ids)
        return created

    async def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        username: Optional[str] = None,
        email: Optional[str] = None,
        status: Optional[bool] = None,
        role_ids: Optional[Sequence[str]] = None,
    ) -> User:
        user = await self.get_user(user_id)
        new_email = email if email is not None and email != user.email else None
        new_username = username if username is not None and username != user.username else None
        await self._ensure_unique(email=new_email, username=new_username)
        if new_email is not None:
            user.email = new_email
        if new_username is not None:
            user.username = new_username
        if name is not None:
            user.name = name
        if status is not None:
            user.credential.set_status(status)
        if role_ids is not None:
            user.roles = []
            for role in await self._resolve_roles(role_ids):
                user.add_role(role)
        self._validate(user)
        user.touch()
        try:
            updated = await self.users.update(user)
        except ConstraintViolation as exc:
            raise constraint_to_error(exc) from exc
        self.logger.info("user_updated", user_id=updated.id)
        return updated

    async def delete_users(self, ids: Sequence[str]) -> int:
        parsed = [parse_id(value, "ids") for value in ids]
        if not parsed:
            return 0
        try:
            removed = await self.users.delete(parsed)
        except ConstraintViolation as exc:
            raise constraint_to_error(exc) from exc
        self.logger.info("users_deleted", count=removed)
        return removed

    async def reset_password(self, email: str) -> None:
        """Clear the password and session token; unknown emails are ignored."""

        user = await self.users.find_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email")
            return
        user.credential.reset_password()
        user.touch()
        await self.users.update(user)
        self.logger.info("password_reset", user_id=user.id)

    async def set_password(self, email: str, password: str, password_confirm: str) -> None:
        """Provision the first password for a user and mint a session token."""

        if not (MIN_PASSWORD_LENGTH <= len(password or "") <= MAX_PASSWORD_LENGTH):
            raise ValidationError(
                f"password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        if password != password_confirm:
            raise ValidationError("passwords do not match", detail={"field": "password_confirm"})
        user = await self.users.find_by_email(email)
        if user is None:
            raise NotFoundError("user not found")
        if user.credential.has_password:
            raise ConflictError("user already has a password", detail={"field": "password"})
        user.credential.password_hash = hash_password(password)
        user.credential.set_token(new_session_token())
        user.touch()
        try:
            await self.users.update(user)
        except ConstraintViolation as exc:
            raise ServerError("internal error") from exc
        self.logger.info("password_set", user_id=user.id)


__all__ = ["UserService", "parse_id", "constraint_to_error"]
