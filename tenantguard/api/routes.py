from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from tenantguard.api.schemas import (
    AuthResponse,
    DeleteResponse,
    Envelope,
    IDsRequest,
    LoginRequest,
    PasswordResetRequest,
    PasswordSetRequest,
    ProfileResponse,
    RoleCreateRequest,
    RoleItemResponse,
    RolePageResponse,
    RoleResponse,
    RoleUpdateRequest,
    UserCreateRequest,
    UserPageResponse,
    UserResponse,
    UserUpdateRequest,
)
from tenantguard.logging import get_logger
from tenantguard.service import authorization as perms
from tenantguard.service.auth import AuthContext, extract_bearer
from tenantguard.service.authorization import require_permission
from tenantguard.service.errors import RateLimitedError, ServerError
from tenantguard.service.runtime import get_runtime
from tenantguard.service.tokens import TokenKind
from tenantguard.storage.common import RoleFilter, UserFilter

logger = get_logger(__name__)


async def _enforce_rate_limit(request: Request, response: Response, scope: str, limit: int) -> None:
    """Spend one request from the client's bucket for ``scope``; 429 once it is empty."""
    if limit <= 0:
        return
    runtime = get_runtime()
    client = request.client.host if request.client else "unknown"
    try:
        result = await asyncio.wait_for(
            runtime.cache.check_rate_limit(
                f"{scope}:{client}", limit, runtime.settings.rate_limit_window_seconds
            ),
            timeout=runtime.settings.auth_operation_timeout_seconds,
        )
    except Exception as exc:
        logger.error("rate_limit_check_failed", scope=scope, error=str(exc))
        raise ServerError("rate limiter unavailable") from exc
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, result.remaining))
    if not result.allowed:
        logger.warning("rate_limited", scope=scope, client=client, limit=limit)
        raise RateLimitedError("too many requests", retry_after=result.retry_after)


async def limit_requests(request: Request, response: Response) -> None:
    await _enforce_rate_limit(
        request, response, "global", get_runtime().settings.rate_limit_per_minute
    )


async def limit_auth_requests(request: Request, response: Response) -> None:
    await _enforce_rate_limit(
        request, response, "auth", get_runtime().settings.auth_rate_limit_per_minute
    )


router = APIRouter(prefix="/v1", dependencies=[Depends(limit_requests)])


def _deadline() -> float:
    return time.monotonic() + get_runtime().settings.request_timeout_seconds


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the access bearer credential to the calling principal."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        extract_bearer(authorization), kind=TokenKind.ACCESS, deadline=_deadline()
    )


async def get_refresh_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        extract_bearer(authorization), kind=TokenKind.REFRESH, deadline=_deadline()
    )


def require(permission: str):
    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        require_permission(principal, permission)
        return principal

    return _dependency


# -- auth ---------------------------------------------------------------------


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(limit_auth_requests)],
)
async def login(body: LoginRequest):
    """Authenticate with login handle and password.

    Returns the user's profile with aggregated permissions and a fresh
    access/refresh credential pair. With ``expiration`` false neither
    credential expires until logout.

    Raises:
        401: If the login or password is wrong
        403: If the account is disabled or has no password yet
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.login, body.password, expiration=body.expiration, deadline=_deadline()
    )
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.put(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(limit_auth_requests)],
)
async def refresh_tokens(
    expiration: bool = Query(True),
    principal: AuthContext = Depends(get_refresh_user),
):
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        principal.user_id, expiration=expiration, deadline=_deadline()
    )
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.get(
    "/auth/me",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(limit_auth_requests)],
)
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = await runtime.auth.me(principal.user_id, deadline=_deadline())
    return Envelope(status="ok", data=ProfileResponse.from_profile(profile))


@router.post(
    "/auth/logout",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(limit_auth_requests)],
)
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.raw_token, kind=principal.kind, deadline=_deadline())
    return Envelope(status="ok", data={"message": "session revoked"})


# -- users --------------------------------------------------------------------


@router.put("/users/password", response_model=Envelope, tags=["users"])
async def set_user_password(body: PasswordSetRequest):
    """Provision the first password of a user; no authentication required."""
    runtime = get_runtime()
    await runtime.user_service.set_password(body.email, body.password, body.password_confirm)
    return Envelope(status="ok", data={"message": "password set"})


@router.patch("/users/password", response_model=Envelope, tags=["users"])
async def reset_user_password(
    body: PasswordResetRequest,
    principal: AuthContext = Depends(require(perms.USERS_EDIT)),
):
    runtime = get_runtime()
    await runtime.user_service.reset_password(body.email)
    return Envelope(status="ok", data={"message": "password reset"})


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    search: str = Query("", max_length=255),
    sort: str = Query("name"),
    order: str = Query("asc"),
    page: int = Query(1, ge=1),
    limit: int = Query(0, ge=0, le=1000, description="0 returns every match"),
    status: Optional[bool] = Query(None),
    role_id: Optional[str] = Query(None),
    principal: AuthContext = Depends(require(perms.USERS_VIEW)),
):
    runtime = get_runtime()
    flt = UserFilter(
        search=search,
        sort=sort,
        order=order,
        page=page,
        limit=limit,
        status=status,
        role_id=role_id,
    )
    result = await runtime.user_service.list_users(flt)
    return Envelope(status="ok", data=UserPageResponse.from_page(result))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str, principal: AuthContext = Depends(require(perms.USERS_VIEW))
):
    runtime = get_runtime()
    user = await runtime.user_service.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


def _audit(
    request: Request,
    principal: AuthContext,
    action: str,
    resource: str,
    resource_ids: List[str],
    changes: Optional[Dict[str, Any]] = None,
) -> None:
    metadata: Dict[str, Any] = {
        "ip": request.client.host if request.client else "",
        "user_agent": request.headers.get("User-Agent", ""),
    }
    if changes:
        metadata["input"] = changes
    get_runtime().auditor.log_many(principal.user_id, action, resource, resource_ids, metadata)


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    request: Request,
    body: UserCreateRequest,
    principal: AuthContext = Depends(require(perms.USERS_CREATE)),
):
    runtime = get_runtime()
    user = await runtime.user_service.create_user(
        name=body.name,
        username=body.username,
        email=body.email,
        status=body.status,
        role_ids=body.role_ids,
    )
    _audit(request, principal, "create", "user", [user.id], body.model_dump(exclude_none=True))
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    request: Request,
    user_id: str,
    body: UserUpdateRequest,
    principal: AuthContext = Depends(require(perms.USERS_EDIT)),
):
    runtime = get_runtime()
    user = await runtime.user_service.update_user(
        user_id,
        name=body.name,
        username=body.username,
        email=body.email,
        status=body.status,
        role_ids=body.role_ids,
    )
    _audit(request, principal, "update", "user", [user.id], body.model_dump(exclude_none=True))
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users", response_model=Envelope, tags=["users"])
async def delete_users(
    request: Request,
    body: IDsRequest,
    principal: AuthContext = Depends(require(perms.USERS_DELETE)),
):
    runtime = get_runtime()
    removed = await runtime.user_service.delete_users(body.ids)
    logger.info("users_delete_requested", actor=principal.user_id, count=removed)
    if removed:
        _audit(request, principal, "delete", "user", list(body.ids))
    return Envelope(status="ok", data=DeleteResponse(deleted=removed))


# -- roles --------------------------------------------------------------------


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(
    search: str = Query("", max_length=255),
    sort: str = Query("name"),
    order: str = Query("asc"),
    page: int = Query(1, ge=1),
    limit: int = Query(0, ge=0, le=1000),
    enabled: Optional[bool] = Query(None),
    principal: AuthContext = Depends(require(perms.ROLES_VIEW)),
):
    runtime = get_runtime()
    flt = RoleFilter(
        search=search, sort=sort, order=order, page=page, limit=limit, enabled=enabled
    )
    result = await runtime.role_service.list_roles(flt)
    return Envelope(status="ok", data=RolePageResponse.from_page(result))


@router.get("/roles/list", response_model=Envelope, tags=["roles"])
async def list_role_items(
    search: str = Query("", max_length=255),
    enabled: Optional[bool] = Query(None),
    principal: AuthContext = Depends(require(perms.ROLES_VIEW)),
):
    """Every matching role as ``{id, name}``, unpaged."""
    runtime = get_runtime()
    items = await runtime.role_service.list_items(RoleFilter(search=search, enabled=enabled))
    return Envelope(status="ok", data=[RoleItemResponse.from_item(item) for item in items])


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(role_id: str, principal: AuthContext = Depends(require(perms.ROLES_VIEW))):
    runtime = get_runtime()
    role = await runtime.role_service.get_role(role_id)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    request: Request,
    body: RoleCreateRequest,
    principal: AuthContext = Depends(require(perms.ROLES_CREATE)),
):
    runtime = get_runtime()
    role = await runtime.role_service.create_role(
        name=body.name, permissions=body.permissions, enabled=body.enabled
    )
    _audit(request, principal, "create", "role", [role.id], body.model_dump(exclude_none=True))
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    request: Request,
    role_id: str,
    body: RoleUpdateRequest,
    principal: AuthContext = Depends(require(perms.ROLES_EDIT)),
):
    runtime = get_runtime()
    role = await runtime.role_service.update_role(
        role_id, name=body.name, permissions=body.permissions, enabled=body.enabled
    )
    _audit(request, principal, "update", "role", [role.id], body.model_dump(exclude_none=True))
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.delete("/roles", response_model=Envelope, tags=["roles"])
async def delete_roles(
    request: Request,
    body: IDsRequest,
    principal: AuthContext = Depends(require(perms.ROLES_DELETE)),
):
    """Delete roles in bulk. Fails with 409 and deletes nothing if any is still assigned."""
    runtime = get_runtime()
    removed = await runtime.role_service.delete_roles(body.ids)
    logger.info("roles_delete_requested", actor=principal.user_id, count=removed)
    if removed:
        _audit(request, principal, "delete", "role", list(body.ids))
    return Envelope(status="ok", data=DeleteResponse(deleted=removed))
