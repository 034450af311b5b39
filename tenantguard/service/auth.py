from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, List, Optional, TypeVar

from tenantguard.logging import get_logger
from tenantguard.service.authorization import effective_permissions
from tenantguard.service.errors import (
    AuthenticationError,
    DisabledPrincipalError,
    InvalidCredentialsError,
    NotFoundError,
    RevokedCredential,
    ServerError,
    ServiceError,
)
from tenantguard.service.passwords import burn_verification, verify_password
from tenantguard.service.revocation import RevocationRegistry
from tenantguard.service.tokens import TokenKind, TokenPair, TokenService
from tenantguard.storage.common import UserStore
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class AuthContext:
    user: User
    session_token: str
    raw_token: str
    kind: TokenKind = TokenKind.ACCESS

    @property
    def user_id(self) -> str:
        return self.user.id


@dataclass
class UserProfile:
    user: User
    permissions: List[str] = field(default_factory=list)

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(user=user, permissions=effective_permissions(user))


@dataclass
class AuthResult:
    profile: UserProfile
    tokens: TokenPair


def new_session_token() -> str:
    return str(uuid.uuid4())


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthService:
    """Login, refresh, who-am-i and logout over the user store.

    Every store and registry call made here is bounded by
    ``operation_timeout`` and, when given, by the caller's absolute
    ``deadline`` (``time.monotonic()`` based). Running out of time always
    rejects the request; it never lets it through.
    """

    def __init__(
        self,
        users: UserStore,
        tokens: TokenService,
        revocations: RevocationRegistry,
        *,
        operation_timeout: float = 5.0,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.revocations = revocations
        self.operation_timeout = operation_timeout
        self.logger = logger

    def _budget(self, deadline: Optional[float]) -> float:
        budget = self.operation_timeout
        if deadline is not None:
            budget = min(budget, deadline - time.monotonic())
        if budget <= 0:
            self.logger.warning("auth_deadline_exceeded")
            raise AuthenticationError("authentication timed out")
        return budget

    async def _bounded(
        self, awaitable: Awaitable[T], *, operation: str, deadline: Optional[float] = None
    ) -> T:
        try:
            budget = self._budget(deadline)
        except AuthenticationError:
            # close the coroutine that will never be awaited
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise
        try:
            return await asyncio.wait_for(awaitable, timeout=budget)
        except asyncio.TimeoutError as exc:
            self.logger.warning("auth_operation_timeout", operation=operation, timeout=budget)
            raise AuthenticationError("authentication timed out") from exc
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            self.logger.error("auth_store_constraint", operation=operation, error=exc.message)
            raise ServerError("internal error") from exc
        except Exception as exc:
            self.logger.error(
                "auth_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("internal error") from exc

    async def issue(
        self, user: User, *, expiration: bool = True, deadline: Optional[float] = None
    ) -> TokenPair:
        """Sign an access/refresh pair, minting the session token on first use."""

        if not user.credential.token:
            user.credential.set_token(new_session_token())
            user.touch()
            await self._bounded(
                self.users.update(user), operation="persist_session_token", deadline=deadline
            )
            self.logger.info("session_token_minted", user_id=user.id)
        return self.tokens.sign_pair(
            user.credential.token, subject=user.id, expiration=expiration
        )

    async def login(
        self,
        login: str,
        password: str,
        *,
        expiration: bool = True,
        deadline: Optional[float] = None,
    ) -> AuthResult:
        user = await self._bounded(
            self.users.find_by_username(login), operation="find_by_username", deadline=deadline
        )
        if user is None:
            burn_verification(password)
            self.logger.info("login_failed", reason="unknown_login")
            raise InvalidCredentialsError("invalid credentials")
        if not verify_password(user.credential.password_hash, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")
        if not user.credential.status or not user.credential.has_password:
            self.logger.info("login_failed", reason="disabled", user_id=user.id)
            raise DisabledPrincipalError("account disabled")
        tokens = await self.issue(user, expiration=expiration, deadline=deadline)
        self.logger.info("login_succeeded", user_id=user.id, expiration=expiration)
        return AuthResult(profile=UserProfile.from_user(user), tokens=tokens)

    async def _require_user(self, user_id: str, deadline: Optional[float]) -> User:
        user = await self._bounded(
            self.users.find_by_id(user_id), operation="find_by_id", deadline=deadline
        )
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def refresh(
        self, user_id: str, *, expiration: bool = True, deadline: Optional[float] = None
    ) -> AuthResult:
        """Re-sign the pair for the same session token; the reference is not rotated."""

        user = await self._require_user(user_id, deadline)
        tokens = await self.issue(user, expiration=expiration, deadline=deadline)
        return AuthResult(profile=UserProfile.from_user(user), tokens=tokens)

    async def me(self, user_id: str, *, deadline: Optional[float] = None) -> UserProfile:
        return UserProfile.from_user(await self._require_user(user_id, deadline))

    async def logout(
        self,
        raw_token: str,
        *,
        kind: TokenKind = TokenKind.ACCESS,
        deadline: Optional[float] = None,
    ) -> None:
        """Revoke the credential and its session token for the longest credential lifetime.

        The session token is also cleared from the credential so the next
        login mints a fresh one instead of reusing a revoked reference.
        """

        claims = self.tokens.verify(raw_token, kind)
        ttl = max(self.tokens.access_ttl, self.tokens.refresh_ttl)
        await self._bounded(
            self.revocations.revoke(raw_token, ttl), operation="revoke_credential", deadline=deadline
        )
        await self._bounded(
            self.revocations.revoke(claims.session_token, ttl),
            operation="revoke_session_token",
            deadline=deadline,
        )
        user = await self._bounded(
            self.users.find_by_token(claims.session_token),
            operation="find_by_token",
            deadline=deadline,
        )
        if user is not None and user.credential.token == claims.session_token:
            user.credential.set_token(None)
            user.touch()
            await self._bounded(
                self.users.update(user), operation="clear_session_token", deadline=deadline
            )
        self.logger.info("logout_succeeded", user_id=user.id if user else None)

    async def _ensure_not_revoked(self, value: str, deadline: Optional[float]) -> None:
        revoked = await self._bounded(
            self.revocations.is_revoked(value), operation="is_revoked", deadline=deadline
        )
        if revoked:
            raise RevokedCredential("credential revoked")

    async def authenticate(
        self,
        raw_token: Optional[str],
        *,
        kind: TokenKind = TokenKind.ACCESS,
        deadline: Optional[float] = None,
    ) -> AuthContext:
        """Resolve a bearer credential to its principal or raise ``AuthenticationError``."""

        if not raw_token:
            raise AuthenticationError("authentication required")
        await self._ensure_not_revoked(raw_token, deadline)
        claims = self.tokens.verify(raw_token, kind)
        await self._ensure_not_revoked(claims.session_token, deadline)
        user = await self._bounded(
            self.users.find_by_token(claims.session_token),
            operation="find_by_token",
            deadline=deadline,
        )
        if user is None:
            raise AuthenticationError("unknown session")
        if claims.subject and claims.subject != user.id:
            self.logger.warning("token_subject_mismatch", user_id=user.id)
            raise AuthenticationError("unknown session")
        if not user.credential.status:
            raise DisabledPrincipalError("account disabled")
        return AuthContext(
            user=user, session_token=claims.session_token, raw_token=raw_token, kind=kind
        )


__all__ = [
    "AuthContext",
    "AuthResult",
    "AuthService",
    "UserProfile",
    "extract_bearer",
    "new_session_token",
]
