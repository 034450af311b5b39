from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401)
    - invalid_credentials (401)
    - forbidden (403)
    - disabled_principal (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """No credential, or the credential presented cannot be honored (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenSignatureInvalid(AuthenticationError):
    """Signing algorithm or key does not match the expected key class."""
    pass


class TokenMalformed(AuthenticationError):
    """Credential cannot be decoded or lacks required claims."""
    pass


class TokenExpired(AuthenticationError):
    """Credential carries an expiry claim that has passed."""
    pass


class RevokedCredential(AuthenticationError):
    """Session was logged out before the credential expired."""
    pass


class InvalidCredentialsError(ServiceError):
    """Login password did not match (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class DisabledPrincipalError(ServiceError):
    """Credential is disabled or has no password provisioned (403)."""
    status_code = 403
    error_code = "disabled_principal"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate unique field, or delete blocked by live references (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many requests from one client within the window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "TokenSignatureInvalid",
    "TokenMalformed",
    "TokenExpired",
    "RevokedCredential",
    "InvalidCredentialsError",
    "ForbiddenError",
    "DisabledPrincipalError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
