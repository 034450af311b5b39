from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.api.schemas import Envelope, ErrorBody
from tenantguard.logging import get_logger, sanitize_error_message
from tenantguard.service.errors import ServiceError
from tenantguard.storage.errors import UNIQUE, ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}

# Authentication failures never say which check failed.
_GENERIC_UNAUTHORIZED = "authentication failed"
_GENERIC_SERVER_ERROR = "internal server error"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Render an error envelope; 401 and 5xx bodies are reduced to a generic message."""
    error_code = code or _error_code_for_status(status_code)
    if status_code == 401:
        message, details = _GENERIC_UNAUTHORIZED, None
    elif status_code >= 500:
        message, details = _GENERIC_SERVER_ERROR, None
        error_code = "server_error"
    else:
        message = sanitize_error_message(message)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _validation_details(exc: RequestValidationError) -> list:
    # request input is echoed by pydantic; keep only location and reason
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            kind=exc.kind,
            message=exc.message,
        )
        if exc.kind == UNIQUE:
            return _error_response(409, exc.message, exc.detail, code="conflict")
        return _error_response(400, exc.message, exc.detail, code="validation_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        response = _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)
        retry_after = getattr(exc, "retry_after", 0)
        if retry_after:
            response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=details,
        )
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, _GENERIC_SERVER_ERROR, code="server_error")
