from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

# keys whose values never reach a log line in clear
_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "email", "private_key")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id to every event logged in this context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def _mask_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def _configure(level: str, json_output: bool, development_mode: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE = [
    re.compile(p)
    for p in (
        # statements and store internals
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)\b(usr_user|usr_auth|usr_role|usr_user_role|usr_audit_log)\b",
        # connection strings carry credentials
        r"(?i)\b(postgres(ql)?|redis)://\S+",
        r"-----BEGIN [A-Z ]+-----",
        # compact JWS
        r"\beyJ[\w-]+\.[\w-]+\.[\w-]+",
        r"(?i)(password|secret|token)\s*[:=]\s*\S+",
        r"(?i)traceback \(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub a message before it is returned to a client."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _CLIENT_UNSAFE:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 500 else error[:497] + "..."
