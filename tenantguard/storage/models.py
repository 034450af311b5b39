from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

ROOT_ROLE_NAME = "ROOT"
WILDCARD_PERMISSION = "*"

MIN_NAME_LENGTH = 5
MIN_USERNAME_LENGTH = 5
MIN_ROLE_NAME_LENGTH = 4
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")


def new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.utcnow()


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return _utcnow()


def is_valid_email(value: str) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value) is not None


@dataclass
class Role:
    """Named permission set. The ROOT name satisfies every permission check."""

    id: str
    name: str
    permissions: List[str] = field(default_factory=list)
    enabled: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, name: str, permissions: Optional[List[str]] = None, *, enabled: bool = True
    ) -> "Role":
        return cls(id=new_id(), name=name, permissions=list(permissions or []), enabled=enabled)

    @property
    def is_root(self) -> bool:
        return self.name == ROOT_ROLE_NAME

    @property
    def grants_all(self) -> bool:
        return WILDCARD_PERMISSION in self.permissions

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def validation_errors(self) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if len(self.name or "") < MIN_ROLE_NAME_LENGTH:
            errors["name"] = f"must be at least {MIN_ROLE_NAME_LENGTH} characters"
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "permissions": list(self.permissions),
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Role":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            permissions=list(data.get("permissions") or []),
            enabled=bool(data.get("enabled", True)),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class Credential:
    """Authentication record owned by exactly one user.

    A credential with ``status`` false, or without a password hash, can never
    authenticate. ``token`` is the opaque session-token reference embedded in
    every signed credential issued for the user; ``None`` means no session.
    """

    id: str
    status: bool = True
    password_hash: Optional[str] = None
    token: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, status: bool = True) -> "Credential":
        return cls(id=new_id(), status=status)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def is_active(self) -> bool:
        return self.status and self.has_password

    def set_status(self, status: bool) -> None:
        self.status = status
        self.updated_at = _utcnow()

    def set_token(self, token: Optional[str]) -> None:
        self.token = token
        self.updated_at = _utcnow()

    def reset_password(self) -> None:
        self.password_hash = None
        self.token = None
        self.updated_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "password_hash": self.password_hash,
            "token": self.token,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            id=str(data["id"]),
            status=bool(data.get("status", False)),
            password_hash=data.get("password_hash"),
            token=data.get("token"),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class User:
    id: str
    name: str
    username: str
    email: str
    credential: Credential
    roles: List[Role] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        username: str,
        email: str,
        *,
        status: bool = True,
        roles: Optional[List[Role]] = None,
    ) -> "User":
        user = cls(
            id=new_id(),
            name=name,
            username=username,
            email=email,
            credential=Credential.new(status),
        )
        for role in roles or []:
            user.add_role(role)
        return user

    @property
    def is_new(self) -> bool:
        return not self.credential.has_password

    @property
    def is_active(self) -> bool:
        return self.credential.status

    @property
    def role_ids(self) -> List[str]:
        return [role.id for role in self.roles]

    def add_role(self, role: Role) -> None:
        if any(existing.id == role.id for existing in self.roles):
            return
        self.roles.append(role)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def validation_errors(self) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if len(self.name or "") < MIN_NAME_LENGTH:
            errors["name"] = f"must be at least {MIN_NAME_LENGTH} characters"
        if len(self.username or "") < MIN_USERNAME_LENGTH:
            errors["username"] = f"must be at least {MIN_USERNAME_LENGTH} characters"
        if not is_valid_email(self.email):
            errors["email"] = "invalid email format"
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "email": self.email,
            "credential": self.credential.to_dict(),
            "roles": [role.to_dict() for role in self.roles],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            username=data["username"],
            email=data["email"],
            credential=Credential.from_dict(data["credential"]),
            roles=[Role.from_dict(item) for item in data.get("roles") or []],
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class AuditLog:
    """One administrative write: who did what to which record, and from where."""

    id: str
    actor_id: Optional[str]
    action: str
    resource: str
    resource_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: str = ""
    user_agent: str = ""
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        actor_id: Optional[str],
        action: str,
        resource: str,
        resource_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        ip_address: str = "",
        user_agent: str = "",
    ) -> "AuditLog":
        return cls(
            id=new_id(),
            actor_id=actor_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            metadata=dict(metadata or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )
