from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from tenantauth.logging import get_logger
from tenantauth.storage.models import User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
_ALGORITHM = "HS256"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def hash_token(token: str) -> str:
    """One-way digest stored in place of raw bearer tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenService:
    """Mints and verifies HS256 access/refresh JWTs.

    Access and refresh tokens are signed with independent secrets and carry a
    ``type`` claim; verification checks both, so a refresh token never passes
    as an access token and vice versa.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("Token secrets are required")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _encode(self, claims: dict[str, Any], secret: str, ttl: timedelta, now: datetime) -> str:
        issued_at = int(now.timestamp())
        payload = {
            **claims,
            "jti": uuid.uuid4().hex,
            "iat": issued_at,
            "exp": issued_at + int(ttl.total_seconds()),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def generate_access_token(self, user: User, *, now: Optional[datetime] = None) -> str:
        now = now or self._now()
        claims = {
            "sub": user.id,
            "tenant_id": user.tenant_id,
            "email": user.email,
            "role": user.role,
            "type": ACCESS_TOKEN_TYPE,
        }
        return self._encode(claims, self._access_secret, self.access_ttl, now)

    def generate_refresh_token(self, user: User, *, now: Optional[datetime] = None) -> str:
        now = now or self._now()
        claims = {"sub": user.id, "type": REFRESH_TOKEN_TYPE}
        return self._encode(claims, self._refresh_secret, self.refresh_ttl, now)

    def issue_pair(self, user: User) -> TokenPair:
        now = self._now()
        return TokenPair(
            access_token=self.generate_access_token(user, now=now),
            refresh_token=self.generate_refresh_token(user, now=now),
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
        )

    def _verify(self, token: str, secret: str, expected_type: str) -> Optional[dict[str, Any]]:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                options={"require": ["sub", "type", "iat", "exp"]},
            )
        except jwt.InvalidTokenError as exc:
            logger.debug("jwt_verification_failed", token_type=expected_type, error=str(exc))
            return None
        if payload.get("type") != expected_type:
            logger.warning(
                "jwt_type_mismatch", expected=expected_type, received=payload.get("type")
            )
            return None
        return payload

    def verify_access_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._verify(token, self._access_secret, ACCESS_TOKEN_TYPE)

    def verify_refresh_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._verify(token, self._refresh_secret, REFRESH_TOKEN_TYPE)

    @staticmethod
    def decode_unverified(token: str) -> Optional[dict[str, Any]]:
        """Read claims without checking the signature.

        Diagnostics only; never use the result for an authorization decision.
        """
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.DecodeError:
            return None

    @staticmethod
    def is_expired(claims: dict[str, Any], now: Optional[datetime] = None) -> bool:
        exp = claims.get("exp")
        if exp is None:
            return True
        current = (now or datetime.now(timezone.utc)).timestamp()
        return float(exp) <= current
