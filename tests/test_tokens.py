"""Tests for access/refresh JWT minting and verification.

Covers:
- Claims carried by access and refresh tokens
- Lifetimes derived from the configured TTLs
- Type and secret separation between the two token kinds
- Expiry and unverified decoding helpers
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from tenantauth.service.tokens import TokenService, hash_token
from tenantauth.storage.models import User


def _user(**overrides):
    values = {
        "id": "user-1",
        "tenant_id": "tenant-1",
        "email": "user@example.com",
        "role": "owner",
    }
    values.update(overrides)
    return User(**values)


class TestTokenClaims:
    def test_access_token_carries_identity_claims(self, token_service):
        token = token_service.generate_access_token(_user())
        claims = token_service.verify_access_token(token)

        assert claims["sub"] == "user-1"
        assert claims["tenant_id"] == "tenant-1"
        assert claims["email"] == "user@example.com"
        assert claims["role"] == "owner"
        assert claims["type"] == "access"
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_refresh_token_is_minimal(self, token_service):
        token = token_service.generate_refresh_token(_user())
        claims = token_service.verify_refresh_token(token)

        assert claims["sub"] == "user-1"
        assert claims["type"] == "refresh"
        assert "email" not in claims
        assert claims["exp"] - claims["iat"] == 30 * 24 * 3600

    def test_tokens_minted_in_same_second_differ(self, token_service):
        """The jti claim keeps token digests unique."""
        now = datetime.now(timezone.utc)
        first = token_service.generate_access_token(_user(), now=now)
        second = token_service.generate_access_token(_user(), now=now)

        assert first != second
        assert hash_token(first) != hash_token(second)

    def test_issue_pair_expiries_follow_ttls(self, token_service):
        before = datetime.now(timezone.utc)
        pair = token_service.issue_pair(_user())

        assert pair.access_expires_at - before <= timedelta(minutes=15, seconds=1)
        assert pair.refresh_expires_at - pair.access_expires_at == timedelta(days=30) - timedelta(minutes=15)


class TestTokenSeparation:
    def test_refresh_token_rejected_as_access(self, token_service):
        refresh = token_service.generate_refresh_token(_user())
        assert token_service.verify_access_token(refresh) is None

    def test_access_token_rejected_as_refresh(self, token_service):
        access = token_service.generate_access_token(_user())
        assert token_service.verify_refresh_token(access) is None

    def test_type_claim_checked_even_with_matching_secret(self):
        service = TokenService("access-secret", "refresh-secret")
        forged = jwt.encode(
            {"sub": "user-1", "type": "refresh", "iat": 0, "exp": 4102444800},
            "access-secret",
            algorithm="HS256",
        )
        assert service.verify_access_token(forged) is None

    def test_foreign_secret_rejected(self, token_service):
        other = TokenService("another-access", "another-refresh")
        token = other.generate_access_token(_user())
        assert token_service.verify_access_token(token) is None

    def test_garbage_rejected(self, token_service):
        assert token_service.verify_access_token("not-a-jwt") is None
        assert token_service.verify_refresh_token("") is None

    def test_missing_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenService("", "refresh-secret")


class TestExpiry:
    def test_expired_token_rejected(self, token_service):
        issued = datetime.now(timezone.utc) - timedelta(hours=1)
        token = token_service.generate_access_token(_user(), now=issued)
        assert token_service.verify_access_token(token) is None

    def test_is_expired(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert TokenService.is_expired({"exp": now.timestamp() - 1}, now)
        assert not TokenService.is_expired({"exp": now.timestamp() + 60}, now)
        assert TokenService.is_expired({}, now)

    def test_decode_unverified_reads_expired_claims(self, token_service):
        issued = datetime.now(timezone.utc) - timedelta(hours=1)
        token = token_service.generate_access_token(_user(), now=issued)

        claims = TokenService.decode_unverified(token)
        assert claims["sub"] == "user-1"
        assert TokenService.is_expired(claims)

    def test_decode_unverified_garbage(self):
        assert TokenService.decode_unverified("garbage") is None


def test_hash_token_is_sha256_hex():
    digest = hash_token("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert hash_token("abc") == digest
