from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthenticationError
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

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]


@dataclass
class GoogleOAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: Optional[str] = None


class GoogleOAuth:
    """Authorization-code flow against Google with OIDC id-token verification."""

    def __init__(
        self,
        config: GoogleOAuthConfig,
        auth_service: "AuthService",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.auth = auth_service
        self._transport = transport

    def get_auth_url(self, *, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri or "",
            "response_type": "code",
            "scope": "openid email profile",
            "access_type": "offline",
            "prompt": "consent",
            "state": state or secrets.token_hex(32),
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
            resp = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "redirect_uri": self.config.redirect_uri or "",
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        if resp.status_code != 200:
            raise OAuthVerificationError(f"Token exchange failed with status {resp.status_code}")
        tokens = resp.json()
        if not tokens.get("id_token"):
            raise OAuthVerificationError("Token response has no id_token")
        return tokens

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        keys = await fetch_jwks(GOOGLE_CERTS_URL, transport=self._transport)
        return verify_rs256_id_token(
            id_token, keys, audience=self.config.client_id, issuer=GOOGLE_ISSUERS
        )

    async def handle_callback(self, code: str, *, client: "ClientContext") -> "AuthResult":
        try:
            tokens = await self.exchange_code(code)
            claims = await self.verify_id_token(tokens["id_token"])
        except (OAuthVerificationError, httpx.HTTPError) as exc:
            logger.warning("google_oauth_rejected", error=str(exc))
            raise AuthenticationError(f"Google sign-in failed: {exc}") from exc

        expires_in = tokens.get("expires_in")
        email_verified = truthy_claim(claims.get("email_verified"))
        identity = OAuthIdentity(
            provider="google",
            provider_user_id=str(claims["sub"]),
            email=claims.get("email"),
            email_verified=email_verified,
            display_name=claims.get("name"),
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            token_expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
            profile_data={
                "name": claims.get("name"),
                "given_name": claims.get("given_name"),
                "family_name": claims.get("family_name"),
                "picture": claims.get("picture"),
                "email_verified": email_verified,
            },
        )
        return await self.auth.login_with_oauth(identity, client)
