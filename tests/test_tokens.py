"""Tests for RS256 access/refresh credential signing and verification."""

import base64
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from tenantguard.service.errors import (
    AuthenticationError,
    TokenExpired,
    TokenMalformed,
    TokenSignatureInvalid,
)
from tenantguard.service.tokens import ALGORITHM, KeyPair, TokenKind, TokenService


class TestSignAndVerify:
    def test_access_round_trip(self, token_service):
        raw, expires_at = token_service.sign("ref-1", TokenKind.ACCESS, subject="user-1")
        claims = token_service.verify(raw, TokenKind.ACCESS)

        assert claims.session_token == "ref-1"
        assert claims.subject == "user-1"
        assert claims.kind is TokenKind.ACCESS
        assert claims.expires_at is not None
        assert abs((claims.expires_at - expires_at).total_seconds()) < 1

    def test_pair_shares_session_token(self, token_service):
        pair = token_service.sign_pair("shared-ref", subject="user-1")

        access = token_service.verify(pair.access_token, TokenKind.ACCESS)
        refresh = token_service.verify(pair.refresh_token, TokenKind.REFRESH)

        assert access.session_token == refresh.session_token == "shared-ref"
        assert pair.session_token == "shared-ref"
        assert pair.refresh_expires_at > pair.access_expires_at

    def test_envelope_carries_required_claims(self, token_service):
        raw, _ = token_service.sign("ref-claims", TokenKind.ACCESS)
        header = jwt.get_unverified_header(raw)
        payload = jwt.get_unverified_claims(raw)

        assert header["alg"] == ALGORITHM
        assert payload["token"] == "ref-claims"
        assert isinstance(payload["iat"], int)
        assert "exp" in payload

    def test_non_expiring_credentials_have_no_exp(self, token_service):
        pair = token_service.sign_pair("forever", expiration=False)

        assert "exp" not in jwt.get_unverified_claims(pair.access_token)
        assert "exp" not in jwt.get_unverified_claims(pair.refresh_token)
        assert pair.access_expires_at is None
        claims = token_service.verify(pair.refresh_token, TokenKind.REFRESH)
        assert claims.expires_at is None


class TestCrossKeyRejection:
    def test_refresh_credential_rejected_as_access(self, token_service):
        pair = token_service.sign_pair("ref-x")

        with pytest.raises(TokenSignatureInvalid):
            token_service.verify(pair.refresh_token, TokenKind.ACCESS)

    def test_access_credential_rejected_as_refresh(self, token_service):
        pair = token_service.sign_pair("ref-y")

        with pytest.raises(TokenSignatureInvalid):
            token_service.verify(pair.access_token, TokenKind.REFRESH)

    def test_foreign_key_rejected(self, token_service):
        stranger = TokenService(KeyPair.generate(), KeyPair.generate())
        raw, _ = stranger.sign("ref-z", TokenKind.ACCESS)

        with pytest.raises(TokenSignatureInvalid):
            token_service.verify(raw, TokenKind.ACCESS)

    def test_symmetric_algorithm_rejected(self, token_service):
        forged = jwt.encode({"token": "ref", "iat": 1}, "shared-secret", algorithm="HS256")

        with pytest.raises(TokenSignatureInvalid):
            token_service.verify(forged, TokenKind.ACCESS)


class TestRejectedCredentials:
    def test_expired_credential(self, key_pairs):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        issuer = TokenService(*key_pairs, clock=lambda: past)
        raw, _ = issuer.sign("old-ref", TokenKind.ACCESS)

        verifier = TokenService(*key_pairs)
        with pytest.raises(TokenExpired):
            verifier.verify(raw, TokenKind.ACCESS)

    def test_missing_session_token_claim(self, token_service, key_pairs):
        raw = jwt.encode({"iat": 1}, key_pairs[0].private_pem, algorithm=ALGORITHM)

        with pytest.raises(TokenMalformed):
            token_service.verify(raw, TokenKind.ACCESS)

    def test_missing_issued_at_claim(self, token_service, key_pairs):
        raw = jwt.encode({"token": "ref"}, key_pairs[0].private_pem, algorithm=ALGORITHM)

        with pytest.raises(TokenMalformed):
            token_service.verify(raw, TokenKind.ACCESS)

    @pytest.mark.parametrize("raw", ["", "not-a-jwt", "a.b.c"])
    def test_garbage_is_malformed(self, token_service, raw):
        with pytest.raises(TokenMalformed):
            token_service.verify(raw, TokenKind.ACCESS)

    def test_every_rejection_is_unauthenticated(self, token_service):
        pair = token_service.sign_pair("ref")

        with pytest.raises(AuthenticationError) as excinfo:
            token_service.verify(pair.refresh_token, TokenKind.ACCESS)
        assert excinfo.value.status_code == 401
        assert excinfo.value.error_code == "unauthorized"


class TestKeyPairs:
    def test_identical_keys_refused(self, key_pairs):
        with pytest.raises(ValueError):
            TokenService(key_pairs[0], key_pairs[0])

    def test_new_generates_distinct_keys(self):
        first = KeyPair.from_setting("new")
        second = KeyPair.from_setting("NEW")

        assert first.public_pem != second.public_pem

    def test_base64_pem_setting(self, key_pairs):
        encoded = base64.b64encode(key_pairs[0].private_pem.encode()).decode()

        loaded = KeyPair.from_setting(encoded)

        assert loaded.public_pem == key_pairs[0].public_pem

    @pytest.mark.parametrize("value", ["%%%not-base64%%%", base64.b64encode(b"not a pem").decode()])
    def test_invalid_setting_raises(self, value):
        with pytest.raises(ValueError):
            KeyPair.from_setting(value)
