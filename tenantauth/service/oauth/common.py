from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx
import jwt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey, RSAPublicNumbers

from tenantauth.logging import get_logger

logger = get_logger(__name__)


class OAuthVerificationError(Exception):
    """An identity token or provider response failed verification."""


@dataclass
class OAuthIdentity:
    """Provider-verified identity normalized for register-or-login."""

    provider: str
    provider_user_id: str
    email: Optional[str] = None
    email_verified: bool = False
    display_name: Optional[str] = None
    provider_username: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    profile_data: Dict[str, Any] = field(default_factory=dict)


def truthy_claim(value: Any) -> bool:
    """Providers send boolean claims either as JSON booleans or as strings."""
    return value is True or (isinstance(value, str) and value.lower() == "true")


def _b64url_uint(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


def rsa_public_key_from_jwk(jwk: Dict[str, Any]) -> RSAPublicKey:
    """Build an RSA public key from the JWK modulus/exponent pair.

    The key length follows the modulus, so 2048- and 4096-bit keys both work.
    """
    if jwk.get("kty") != "RSA":
        raise OAuthVerificationError(f"Unsupported key type: {jwk.get('kty')}")
    try:
        modulus = _b64url_uint(jwk["n"])
        exponent = _b64url_uint(jwk["e"])
    except (KeyError, ValueError) as exc:
        raise OAuthVerificationError("Malformed JWK") from exc
    return RSAPublicNumbers(exponent, modulus).public_key()


async def fetch_jwks(
    url: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = 10.0,
) -> List[Dict[str, Any]]:
    async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        data = resp.json()
    keys = data.get("keys") if isinstance(data, dict) else None
    if not isinstance(keys, list):
        raise OAuthVerificationError("Key set response has no keys")
    return keys


def verify_rs256_id_token(
    id_token: str,
    keys: Iterable[Dict[str, Any]],
    *,
    audience: str,
    issuer: Union[str, List[str]],
) -> Dict[str, Any]:
    """Select the signing key by ``kid`` and verify signature, audience and issuer."""
    try:
        header = jwt.get_unverified_header(id_token)
    except jwt.DecodeError as exc:
        raise OAuthVerificationError(f"Malformed identity token: {exc}") from exc
    kid = header.get("kid")
    if not kid:
        raise OAuthVerificationError("Identity token header has no key id")
    jwk = next((key for key in keys if key.get("kid") == kid), None)
    if jwk is None:
        raise OAuthVerificationError(f"No provider key matches key id {kid}")
    public_key = rsa_public_key_from_jwk(jwk)
    try:
        return jwt.decode(
            id_token,
            public_key,
            algorithms=["RS256"],
            audience=audience,
            issuer=issuer,
            options={"require": ["sub", "iss", "aud", "exp"]},
        )
    except jwt.InvalidTokenError as exc:
        raise OAuthVerificationError(str(exc)) from exc


class ProviderTokenCipher:
    """Fernet encryption for provider access/refresh tokens at rest."""

    def __init__(self, key_material: str) -> None:
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        try:
            # Already a Fernet key
            Fernet(key_material.encode())
            return key_material.encode()
        except ValueError:
            return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("provider_token_decrypt_failed")
            return None
