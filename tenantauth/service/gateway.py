"""Opaque gateway tokens for the realtime connection authority.

A client holding a valid access token exchanges it for a random 64-hex
token bound to its user and tenant. The realtime authority validates the
presented token through an ordered chain:

1. dynamic: a well-formed token is looked up in the store (unexpired,
   unrevoked). A miss, a malformed value or a store failure passes on.
2. static: a configured shared secret is compared in constant time and
   either accepts or rejects.

Nothing accepts by falling off the end of the chain; without a static
secret the chain ends in a rejection.
"""

from __future__ import annotations

import enum
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditLogger
from tenantauth.service.auth import AuthService
from tenantauth.service.errors import NotFoundError, ServerError
from tenantauth.storage.base import CredentialStore
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import GatewayPrincipal, User, utcnow

logger = get_logger(__name__)

GATEWAY_TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


class Verdict(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    PASS = "pass"


@dataclass
class GatewayGrant:
    token: str
    expires_at: datetime


ValidatorResult = Tuple[Verdict, Optional[GatewayPrincipal]]
Validator = Callable[[str], ValidatorResult]


def looks_like_gateway_token(value: str) -> bool:
    return bool(_TOKEN_RE.match(value or ""))


def token_from_connect_message(message: Any) -> Optional[str]:
    """Read the ``auth.token`` credential from a realtime connect message."""
    if not isinstance(message, Mapping):
        return None
    auth = message.get("auth")
    if not isinstance(auth, Mapping):
        return None
    token = auth.get("token")
    return token if isinstance(token, str) and token else None


class GatewayTokenBroker:
    def __init__(
        self,
        store: CredentialStore,
        auth: AuthService,
        audit: AuditLogger,
        *,
        ttl: timedelta = timedelta(hours=1),
        static_token: Optional[str] = None,
    ) -> None:
        self.store = store
        self.auth = auth
        self.audit = audit
        self.ttl = ttl
        self.static_token = static_token
        self.validators: List[Validator] = [self._reject_empty, self._dynamic, self._static]

    async def exchange(self, access_token: str, *, user: Optional[User] = None) -> GatewayGrant:
        """Exchange a currently valid access token for a gateway token."""
        if user is None:
            user = await self.auth.validate_access_token(access_token)
        expires_at = utcnow() + self.ttl
        for _ in range(3):
            token = secrets.token_hex(GATEWAY_TOKEN_BYTES)
            try:
                self.store.create_gateway_token(token, user.id, user.tenant_id, expires_at)
                break
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "token":
                    raise
                logger.warning("gateway_token_collision", user_id=user.id)
        else:
            raise ServerError("Could not issue gateway token")
        self.audit.log(
            "gateway_token.created",
            tenant_id=user.tenant_id,
            user_id=user.id,
            resource_type="gateway_token",
            metadata={"expiresAt": expires_at.isoformat()},
        )
        return GatewayGrant(token=token, expires_at=expires_at)

    async def revoke(self, token: str, *, user: User) -> None:
        if not self.store.revoke_gateway_token(token, user_id=user.id):
            raise NotFoundError("Gateway token not found")
        self.audit.log(
            "gateway_token.revoked",
            tenant_id=user.tenant_id,
            user_id=user.id,
            resource_type="gateway_token",
        )

    # -- validation chain ----------------------------------------------------

    def _reject_empty(self, token: str) -> ValidatorResult:
        if not token:
            return Verdict.REJECT, None
        return Verdict.PASS, None

    def _dynamic(self, token: str) -> ValidatorResult:
        if not looks_like_gateway_token(token):
            return Verdict.PASS, None
        try:
            principal = self.store.find_gateway_principal(token, utcnow())
        except Exception as exc:
            # Never treat an unreachable store as a match
            logger.error(
                "gateway_dynamic_validation_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Verdict.PASS, None
        if principal is None:
            return Verdict.PASS, None
        return Verdict.ACCEPT, principal

    def _static(self, token: str) -> ValidatorResult:
        if not self.static_token:
            return Verdict.REJECT, None
        if hmac.compare_digest(token.encode(), self.static_token.encode()):
            return Verdict.ACCEPT, GatewayPrincipal(user_id=None, tenant_id=None, source="static")
        return Verdict.REJECT, None

    def validate(self, token: Optional[str]) -> Optional[GatewayPrincipal]:
        """Run the chain; returns the principal or None when rejected."""
        value = token or ""
        for validator in self.validators:
            verdict, principal = validator(value)
            if verdict is Verdict.ACCEPT:
                return principal
            if verdict is Verdict.REJECT:
                return None
        return None

    def validate_connect_message(self, message: Any) -> Optional[GatewayPrincipal]:
        return self.validate(token_from_connect_message(message))
