"""Sign in with Apple.

Apple requires the relying party to authenticate to its token endpoint with
an ES256-signed client secret, and publishes RSA signing keys for identity
tokens as a JWK set. Two entry points converge on the same verification:

- server flow: Apple posts ``code``, ``id_token`` and, on first sign-in only,
  a JSON ``user`` payload to the redirect URI;
- client flow: a native SDK hands over the ``id_token`` and optional profile.
"""

from __future__ import annotations

import json
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional
from urllib.parse import urlencode

import httpx
import jwt

from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthenticationError, ServerError
from tenantauth.service.oauth.common import (
    OAuthIdentity,
    OAuthVerificationError,
    fetch_jwks,
    truthy_claim,
    verify_rs256_id_token,
)
from tenantauth.storage.models import utcnow

if TYPE_CHECKING:
    from tenantauth.service.auth import AuthResult, AuthService, ClientContext

logger = get_logger(__name__)

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_AUTHORIZE_URL = "https://appleid.apple.com/auth/authorize"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"
APPLE_REVOKE_URL = "https://appleid.apple.com/auth/revoke"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
# Apple rejects client secrets valid for longer than six months
CLIENT_SECRET_TTL_SECONDS = 15777000


@dataclass
class AppleOAuthConfig:
    client_id: str
    team_id: str
    key_id: str
    private_key: str
    redirect_uri: Optional[str] = None


def _display_name(user_info: Optional[Dict[str, Any]]) -> Optional[str]:
    name = (user_info or {}).get("name")
    if not isinstance(name, dict):
        return None
    parts = [name.get("firstName"), name.get("lastName")]
    joined = " ".join(part for part in parts if part)
    return joined or None


class AppleOAuth:
    def __init__(
        self,
        config: AppleOAuthConfig,
        auth_service: "AuthService",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.auth = auth_service
        self._transport = transport

    def generate_client_secret(self, *, now: Optional[int] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "iss": self.config.team_id,
            "iat": issued_at,
            "exp": issued_at + CLIENT_SECRET_TTL_SECONDS,
            "aud": APPLE_ISSUER,
            "sub": self.config.client_id,
        }
        return jwt.encode(
            payload,
            self.config.private_key,
            algorithm="ES256",
            headers={"kid": self.config.key_id},
        )

    def get_auth_url(
        self,
        *,
        state: Optional[str] = None,
        scope: Optional[Iterable[str]] = None,
        response_mode: str = "form_post",
    ) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri or "",
            "response_type": "code id_token",
            "response_mode": response_mode,
            "scope": " ".join(scope or ("name", "email")),
            "state": state or secrets.token_hex(32),
        }
        return f"{APPLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def _post_form(self, url: str, data: Dict[str, str]) -> httpx.Response:
        async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
            return await client.post(url, data=data)

    async def exchange_code_for_tokens(self, code: str) -> Dict[str, Any]:
        resp = await self._post_form(
            APPLE_TOKEN_URL,
            {
                "client_id": self.config.client_id,
                "client_secret": self.generate_client_secret(),
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.config.redirect_uri or "",
            },
        )
        if resp.status_code != 200:
            raise OAuthVerificationError(f"Token exchange failed: {resp.text}")
        return resp.json()

    async def revoke_token(self, refresh_token: str) -> None:
        resp = await self._post_form(
            APPLE_REVOKE_URL,
            {
                "client_id": self.config.client_id,
                "client_secret": self.generate_client_secret(),
                "token": refresh_token,
                "token_type_hint": "refresh_token",
            },
        )
        if resp.status_code != 200:
            logger.error("apple_token_revoke_failed", status_code=resp.status_code)
            raise ServerError("Apple token revocation failed")

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        try:
            keys = await fetch_jwks(APPLE_KEYS_URL, transport=self._transport)
            return verify_rs256_id_token(
                id_token, keys, audience=self.config.client_id, issuer=APPLE_ISSUER
            )
        except (OAuthVerificationError, httpx.HTTPError) as exc:
            logger.warning("apple_id_token_rejected", error=str(exc))
            raise AuthenticationError(f"Apple ID token verification failed: {exc}") from exc

    def _identity(
        self,
        claims: Dict[str, Any],
        user_info: Optional[Dict[str, Any]],
        provider_tokens: Optional[Dict[str, Any]] = None,
    ) -> OAuthIdentity:
        display_name = _display_name(user_info)
        # the one-time user payload is unsigned; only the verified token names the email
        email = claims.get("email")
        email_verified = truthy_claim(claims.get("email_verified"))
        profile = {
            **(user_info or {}),
            "email": email,
            "email_verified": email_verified,
            "is_private_email": truthy_claim(claims.get("is_private_email")),
            "name": display_name,
        }
        tokens = provider_tokens or {}
        expires_in = tokens.get("expires_in")
        return OAuthIdentity(
            provider="apple",
            provider_user_id=str(claims["sub"]),
            email=email,
            email_verified=email_verified,
            display_name=display_name,
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            token_expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
            profile_data=profile,
        )

    async def handle_server_callback(
        self,
        *,
        code: Optional[str],
        id_token: str,
        user: Optional[str] = None,
        state: Optional[str] = None,
        client: "ClientContext",
    ) -> "AuthResult":
        claims = await self.verify_id_token(id_token)
        user_info: Optional[Dict[str, Any]] = None
        if user:
            try:
                parsed = json.loads(user)
                user_info = parsed if isinstance(parsed, dict) else None
            except json.JSONDecodeError as exc:
                logger.warning("apple_user_payload_unparseable", error=str(exc))
        provider_tokens: Optional[Dict[str, Any]] = None
        if code:
            try:
                provider_tokens = await self.exchange_code_for_tokens(code)
            except (OAuthVerificationError, httpx.HTTPError) as exc:
                logger.warning("apple_code_exchange_failed", error=str(exc))
                raise AuthenticationError("Apple authorization code exchange failed") from exc
        identity = self._identity(claims, user_info, provider_tokens)
        return await self.auth.login_with_oauth(identity, client)

    async def handle_client_callback(
        self,
        *,
        id_token: str,
        user: Optional[Dict[str, Any]] = None,
        client: "ClientContext",
    ) -> "AuthResult":
        claims = await self.verify_id_token(id_token)
        identity = self._identity(claims, user)
        return await self.auth.login_with_oauth(identity, client)
