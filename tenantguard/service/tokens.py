"""Signed session credentials.

Access and refresh credentials are RS256 JWTs signed with two different RSA
key pairs. Both embed the same opaque session-token reference (``token``) so
a single revocation covers the pair. Verification only needs the public key
of the expected class and never touches a store.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from tenantguard.logging import get_logger
from tenantguard.service.errors import (
    TokenExpired,
    TokenMalformed,
    TokenSignatureInvalid,
)

logger = get_logger(__name__)

ALGORITHM = "RS256"
GENERATE_KEY = "new"
RSA_KEY_BITS = 2048


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class KeyPair:
    private_pem: str
    public_pem: str

    @classmethod
    def generate(cls) -> "KeyPair":
        key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_BITS)
        return cls._from_private_key(key)

    @classmethod
    def from_pem(cls, pem: bytes | str) -> "KeyPair":
        raw = pem.encode() if isinstance(pem, str) else pem
        key = serialization.load_pem_private_key(raw, password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("signing key must be an RSA private key")
        return cls._from_private_key(key)

    @classmethod
    def from_setting(cls, value: str) -> "KeyPair":
        """Resolve a configured key: ``new`` generates one, anything else is base64 PEM."""

        if not value or value.strip().lower() == GENERATE_KEY:
            return cls.generate()
        try:
            decoded = base64.b64decode(value.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("signing key must be base64-encoded PEM") from exc
        return cls.from_pem(decoded)

    @staticmethod
    def _from_private_key(key: rsa.RSAPrivateKey) -> "KeyPair":
        private_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        public_pem = key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        return KeyPair(private_pem=private_pem, public_pem=public_pem)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_token: str
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class TokenClaims:
    session_token: str
    subject: Optional[str]
    issued_at: datetime
    expires_at: Optional[datetime]
    kind: TokenKind


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    def __init__(
        self,
        access_key: KeyPair,
        refresh_key: KeyPair,
        *,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if access_key.public_pem == refresh_key.public_pem:
            raise ValueError("access and refresh credentials require distinct key pairs")
        self._keys = {TokenKind.ACCESS: access_key, TokenKind.REFRESH: refresh_key}
        self._ttls = {TokenKind.ACCESS: access_ttl, TokenKind.REFRESH: refresh_ttl}
        self._clock = clock

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[TokenKind.REFRESH]

    @property
    def access_ttl(self) -> timedelta:
        return self._ttls[TokenKind.ACCESS]

    def sign(
        self,
        session_token: str,
        kind: TokenKind,
        *,
        subject: Optional[str] = None,
        expiration: bool = True,
    ) -> tuple[str, Optional[datetime]]:
        """Sign one credential; without ``expiration`` no ``exp`` claim is set."""

        now = self._clock()
        claims: dict[str, Any] = {"token": session_token, "iat": int(now.timestamp())}
        if subject:
            claims["sub"] = subject
        expires_at = None
        if expiration:
            expires_at = now + self._ttls[kind]
            claims["exp"] = int(expires_at.timestamp())
        encoded = jwt.encode(claims, self._keys[kind].private_pem, algorithm=ALGORITHM)
        return encoded, expires_at

    def sign_pair(
        self, session_token: str, *, subject: Optional[str] = None, expiration: bool = True
    ) -> TokenPair:
        access, access_exp = self.sign(
            session_token, TokenKind.ACCESS, subject=subject, expiration=expiration
        )
        refresh, refresh_exp = self.sign(
            session_token, TokenKind.REFRESH, subject=subject, expiration=expiration
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            session_token=session_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, raw: str, kind: TokenKind) -> TokenClaims:
        """Verify ``raw`` against the public key of ``kind``.

        Raises ``TokenSignatureInvalid`` for a wrong algorithm or key,
        ``TokenMalformed`` for undecodable credentials or missing claims and
        ``TokenExpired`` once a present ``exp`` has passed.
        """

        if not raw:
            raise TokenMalformed("credential missing")
        try:
            header = jwt.get_unverified_header(raw)
        except JWTError as exc:
            raise TokenMalformed("credential could not be decoded") from exc
        if header.get("alg") != ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"), kind=kind.value)
            raise TokenSignatureInvalid("unexpected signing algorithm")
        try:
            payload = jwt.decode(
                raw,
                self._keys[kind].public_pem,
                algorithms=[ALGORITHM],
                options={"verify_aud": False, "leeway": 0},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired("credential expired") from exc
        except JWTClaimsError as exc:
            raise TokenMalformed("credential claims invalid") from exc
        except JWTError as exc:
            raise TokenSignatureInvalid("credential signature invalid") from exc

        session_token = payload.get("token")
        issued_at = payload.get("iat")
        if not isinstance(session_token, str) or not session_token:
            raise TokenMalformed("credential missing session token")
        if not isinstance(issued_at, (int, float)):
            raise TokenMalformed("credential missing issued-at")
        exp = payload.get("exp")
        return TokenClaims(
            session_token=session_token,
            subject=payload.get("sub"),
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
            kind=kind,
        )


__all__ = [
    "ALGORITHM",
    "KeyPair",
    "TokenKind",
    "TokenPair",
    "TokenClaims",
    "TokenService",
]
