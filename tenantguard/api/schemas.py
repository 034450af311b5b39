from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from tenantguard.service.auth import AuthResult, UserProfile
from tenantguard.service.pagination import Page
from tenantguard.service.roles import RoleItem
from tenantguard.service.tokens import TokenPair
from tenantguard.storage.models import MAX_PASSWORD_LENGTH, Role, User

MAX_BULK_IDS = 1000
MAX_STRING_LENGTH = 255

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "forbidden",
    "disabled_principal",
    "not_found",
    "validation_error",
    "conflict",
    "rate_limited",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


def _normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- requests ---------------------------------------------------------------


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    expiration: bool = True

    @field_validator("login")
    @classmethod
    def _strip_login(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class UserCreateRequest(BaseModel):
    name: str = Field(..., max_length=MAX_STRING_LENGTH)
    username: str = Field(..., max_length=MAX_STRING_LENGTH)
    email: str
    status: bool = True
    role_ids: List[str] = Field(default_factory=list, max_length=MAX_BULK_IDS)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("name", "username")
    @classmethod
    def _strip(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    username: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    email: Optional[str] = None
    status: Optional[bool] = None
    role_ids: Optional[List[str]] = Field(default=None, max_length=MAX_BULK_IDS)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _normalize_email(value)

    @field_validator("name", "username")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _normalize_unicode(value.strip())


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class PasswordSetRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    password_confirm: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class RoleCreateRequest(BaseModel):
    name: str = Field(..., max_length=MAX_STRING_LENGTH)
    permissions: List[str] = Field(default_factory=list, max_length=MAX_BULK_IDS)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    permissions: Optional[List[str]] = Field(default=None, max_length=MAX_BULK_IDS)
    enabled: Optional[bool] = None

    @model_validator(mode="after")
    def _require_change(self) -> "RoleUpdateRequest":
        if self.name is None and self.permissions is None and self.enabled is None:
            raise ValueError("at least one field must be provided")
        return self


class IDsRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1, max_length=MAX_BULK_IDS)


# -- responses --------------------------------------------------------------


class RoleResponse(BaseModel):
    id: str
    name: str
    permissions: List[str]
    enabled: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            permissions=list(role.permissions),
            enabled=role.enabled,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class RoleItemResponse(BaseModel):
    id: str
    name: str

    @classmethod
    def from_item(cls, item: RoleItem) -> "RoleItemResponse":
        return cls(id=item.id, name=item.name)


class UserResponse(BaseModel):
    id: str
    name: str
    username: str
    email: str
    status: bool
    new: bool
    roles: List[RoleResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            username=user.username,
            email=user.email,
            status=user.credential.status,
            new=user.is_new,
            roles=[RoleResponse.from_role(role) for role in user.roles],
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class ProfileResponse(UserResponse):
    permissions: List[str] = Field(default_factory=list)

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "ProfileResponse":
        base = UserResponse.from_user(profile.user).model_dump()
        return cls(**base, permissions=list(profile.permissions))


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class AuthResponse(BaseModel):
    user: ProfileResponse
    tokens: TokenResponse

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            user=ProfileResponse.from_profile(result.profile),
            tokens=TokenResponse.from_pair(result.tokens),
        )


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total_items: int
    total_pages: int


class UserPageResponse(BaseModel):
    items: List[UserResponse]
    pagination: PaginationResponse

    @classmethod
    def from_page(cls, page: Page[User]) -> "UserPageResponse":
        return cls(
            items=[UserResponse.from_user(user) for user in page.items],
            pagination=PaginationResponse(
                page=page.page,
                limit=page.limit,
                total_items=page.total_items,
                total_pages=page.total_pages,
            ),
        )


class RolePageResponse(BaseModel):
    items: List[RoleResponse]
    pagination: PaginationResponse

    @classmethod
    def from_page(cls, page: Page[Role]) -> "RolePageResponse":
        return cls(
            items=[RoleResponse.from_role(role) for role in page.items],
            pagination=PaginationResponse(
                page=page.page,
                limit=page.limit,
                total_items=page.total_items,
                total_pages=page.total_pages,
            ),
        )


class DeleteResponse(BaseModel):
    deleted: int
