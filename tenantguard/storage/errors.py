from __future__ import annotations

from typing import Any, Dict, Optional

UNIQUE = "unique"
FOREIGN_KEY = "foreign_key"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        kind: str = UNIQUE,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.kind = kind


__all__ = ["ConstraintViolation", "UNIQUE", "FOREIGN_KEY"]
