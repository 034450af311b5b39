from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantguard.logging import get_logger

logger = get_logger(__name__)

_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str | None, password: str) -> bool:
    """Return True when ``password`` matches ``password_hash``; never raises on mismatch."""
    if not password_hash:
        return False
    try:
        return _hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_invalid")
        return False


# Verified against when the login handle is unknown so response time does not
# reveal whether the account exists.
DUMMY_HASH: str = hash_password("tenantguard-timing-equalizer")


def burn_verification(password: str) -> None:
    verify_password(DUMMY_HASH, password)


__all__ = ["hash_password", "verify_password", "burn_verification", "DUMMY_HASH"]
