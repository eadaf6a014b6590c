from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger
from tenantauth.service.audit import LOGIN_FAILED_ACTION, AuditLogger
from tenantauth.service.email_queue import EmailQueue
from tenantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tenantauth.service.metrics import AuthMetrics
from tenantauth.service.oauth.common import OAuthIdentity, ProviderTokenCipher
from tenantauth.service.tokens import TokenPair, TokenService, hash_token
from tenantauth.storage.base import CredentialStore
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import OAuthProviderLink, Session, Tenant, User, utcnow

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_ACCESS_TOKEN = "Invalid or expired access token"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"
PASSWORD_RULE = (
    "Password must be at least 8 characters with uppercase, lowercase, number, and symbol"
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SYMBOL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


@dataclass
class ClientContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    tenant: Tenant
    tokens: TokenPair
    session_id: str
    is_new_user: bool = False


def validate_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email format", detail={"field": "email"})
    return normalized


def validate_password(password: str) -> None:
    password = password or ""
    strong = (
        len(password) >= 8
        and re.search(r"[A-Z]", password)
        and re.search(r"[a-z]", password)
        and re.search(r"\d", password)
        and _SYMBOL_RE.search(password)
    )
    if not strong:
        raise ValidationError(PASSWORD_RULE, detail={"field": "password"})


def infer_device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    lowered = user_agent.lower()
    if "mobile" in lowered:
        return "mobile"
    if "tablet" in lowered or "ipad" in lowered:
        return "tablet"
    if "electron" in lowered:
        return "desktop"
    return "web"


def tenant_slug(email: str) -> str:
    local = email.split("@", 1)[0].lower()
    return f"{re.sub(r'[^a-z0-9]', '-', local)}-{secrets.token_hex(4)}"


class AuthService:
    """Registration, login and the session lifecycle.

    Sessions are tracked by SHA-256 digests of the issued tokens. A JWT with
    a good signature and unexpired ``exp`` is only a pre-filter: access is
    granted when its digest also matches an active, unexpired session row,
    so revoking the row invalidates the token immediately.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        *,
        audit: AuditLogger,
        email_queue: EmailQueue,
        metrics: AuthMetrics,
        cipher: ProviderTokenCipher,
        email_verification_ttl: timedelta = timedelta(hours=24),
        password_reset_ttl: timedelta = timedelta(minutes=60),
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.audit = audit
        self.email_queue = email_queue
        self.metrics = metrics
        self.cipher = cipher
        self.email_verification_ttl = email_verification_ttl
        self.password_reset_ttl = password_reset_ttl
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost a hash
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- registration ------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        locale: str = "en",
        country: Optional[str] = None,
        metadata: Optional[dict] = None,
        client: Optional[ClientContext] = None,
    ) -> AuthResult:
        client = client or ClientContext()
        email = validate_email(email)
        validate_password(password)
        if self.store.get_user_by_email(email):
            raise ConflictError("Email already registered", detail={"field": "email"})

        password_hash = self._hash_password(password)
        verification_token = secrets.token_hex(32)
        try:
            with self.store.transaction():
                tenant = self.store.create_tenant(email, tenant_slug(email), email)
                user = self.store.create_user(
                    tenant.id,
                    email,
                    password_hash=password_hash,
                    role="owner",
                    display_name=display_name,
                    locale=locale or "en",
                    country=country,
                    metadata=metadata,
                )
                self.store.create_email_verification_token(
                    user.id, verification_token, email, utcnow() + self.email_verification_ttl
                )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            raise ConflictError("Email already registered", detail=exc.detail) from exc

        self.email_queue.send_verification(email, verification_token, display_name)
        tokens, session = self.create_session(user, client)
        self.audit.log(
            "user.registered",
            tenant_id=tenant.id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            metadata={"method": "email", "locale": locale, "country": country},
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        self.metrics.record_registration("email")
        self.logger.info("user_registered", user_id=user.id, tenant_id=tenant.id, method="email")
        return AuthResult(user, tenant, tokens, session.id, is_new_user=True)

    # -- login -------------------------------------------------------------

    def _login_failed(
        self, reason: str, client: ClientContext, *, user: Optional[User] = None, email: Optional[str] = None
    ) -> AuthenticationError:
        metadata = {"reason": reason}
        if user is None and email:
            metadata["email"] = email
        self.audit.log(
            LOGIN_FAILED_ACTION,
            tenant_id=user.tenant_id if user else None,
            user_id=user.id if user else None,
            resource_type="user",
            resource_id=user.id if user else None,
            metadata=metadata,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            status="failure",
        )
        self.metrics.record_login("email", False)
        self.metrics.record_failed_login(reason)
        self.logger.info("login_failed", reason=reason)
        return AuthenticationError(INVALID_CREDENTIALS)

    async def login(
        self, email: str, password: str, *, client: Optional[ClientContext] = None
    ) -> AuthResult:
        client = client or ClientContext()
        started = time.perf_counter()
        try:
            return await self._login(email, password, client)
        finally:
            self.metrics.observe_login_duration(time.perf_counter() - started)

    async def _login(self, email: str, password: str, client: ClientContext) -> AuthResult:
        email = (email or "").strip().lower()
        user = self.store.get_user_by_email(email)
        if user is None:
            self._verify_password(self._dummy_hash, password or "")
            raise self._login_failed("user_not_found", client, email=email)
        if user.status != "active":
            raise self._login_failed("account_suspended", client, user=user)
        if not user.password_hash:
            # OAuth-only account
            raise self._login_failed("password_not_set", client, user=user)
        if not self._verify_password(user.password_hash, password or ""):
            raise self._login_failed("invalid_password", client, user=user)
        if user.two_factor_enabled:
            raise ServerError("2FA not yet implemented", status_code=501)

        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None:
            self.logger.error("login_tenant_missing", user_id=user.id, tenant_id=user.tenant_id)
            raise ServerError("Account is misconfigured")
        self.store.record_login(user.id, client.ip_address)
        tokens, session = self.create_session(user, client)
        self.audit.log(
            "user.login",
            tenant_id=user.tenant_id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            metadata={"method": "email"},
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        self.metrics.record_login("email", True)
        return AuthResult(user, tenant, tokens, session.id)

    # -- sessions ----------------------------------------------------------

    def create_session(self, user: User, client: Optional[ClientContext] = None) -> Tuple[TokenPair, Session]:
        """Mint a token pair and persist only its digests.

        The raw tokens in the returned pair are never stored.
        """
        client = client or ClientContext()
        pair = self.tokens.issue_pair(user)
        session = self.store.create_session(
            user.id,
            hash_token(pair.access_token),
            pair.access_expires_at,
            hash_token(pair.refresh_token),
            pair.refresh_expires_at,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
            device_type=infer_device_type(client.user_agent),
        )
        self.metrics.record_session_created()
        return pair, session

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.tokens.verify_refresh_token(refresh_token or "")
        if not claims:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        old_hash = hash_token(refresh_token)
        session = self.store.get_active_session_by_refresh_hash(old_hash, utcnow())
        if session is None:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        user = self.store.get_user(session.user_id)
        if user is None or user.status != "active" or claims.get("sub") != user.id:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)

        pair = self.tokens.issue_pair(user)
        rotated = self.store.rotate_session(
            session.id,
            old_hash,
            hash_token(pair.access_token),
            pair.access_expires_at,
            hash_token(pair.refresh_token),
            pair.refresh_expires_at,
        )
        if not rotated:
            # A concurrent refresh already consumed this token
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        self.logger.info("session_rotated", session_id=session.id, user_id=user.id)
        return pair

    async def validate_access_token(self, access_token: str) -> User:
        if not access_token or not self.tokens.verify_access_token(access_token):
            raise AuthenticationError(INVALID_ACCESS_TOKEN)
        match = self.store.validate_access_session(hash_token(access_token), utcnow())
        if match is None:
            raise AuthenticationError(INVALID_ACCESS_TOKEN)
        _, user = match
        if user.status != "active":
            raise AuthenticationError(INVALID_ACCESS_TOKEN)
        return user

    async def logout(self, access_token: str, *, user: Optional[User] = None) -> None:
        revoked = self.store.revoke_session_by_access_hash(hash_token(access_token), "user_logout")
        self.metrics.record_sessions_revoked("user_logout", revoked)
        if user is not None:
            self.audit.log(
                "user.logout",
                tenant_id=user.tenant_id,
                user_id=user.id,
                resource_type="session",
            )

    async def logout_all(self, user_id: str, *, reason: str = "logout_all") -> int:
        revoked = self.store.revoke_user_sessions(user_id, reason)
        self.metrics.record_sessions_revoked(reason, revoked)
        self.logger.info("sessions_revoked", user_id=user_id, reason=reason, count=revoked)
        return revoked

    # -- email verification --------------------------------------------------

    async def verify_email(self, token: str) -> User:
        with self.store.transaction():
            row = self.store.consume_email_verification_token(token or "", utcnow())
            if row is None:
                raise ValidationError("Invalid or expired verification token")
            self.store.mark_email_verified(row.user_id)
        user = self.store.get_user(row.user_id)
        if user is None:
            raise NotFoundError("User not found")
        self.audit.log(
            "user.email_verified",
            tenant_id=user.tenant_id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
        )
        self.email_queue.send_welcome(user.email, user.display_name)
        return user

    async def resend_verification(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise ValidationError("Email already verified")
        token = secrets.token_hex(32)
        self.store.create_email_verification_token(
            user.id, token, user.email, utcnow() + self.email_verification_ttl
        )
        self.email_queue.send_verification(user.email, token, user.display_name)

    # -- password reset ------------------------------------------------------

    async def request_password_reset(self, email: str, *, client: Optional[ClientContext] = None) -> None:
        """Start a reset if the account exists.

        Returns the same way whether or not the email is registered.
        """
        client = client or ClientContext()
        user = self.store.get_user_by_email((email or "").strip().lower())
        if user is None:
            self.logger.info("password_reset_unknown_email")
            return
        token = secrets.token_hex(32)
        self.store.create_password_reset_token(
            user.id,
            token,
            utcnow() + self.password_reset_ttl,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        self.email_queue.send_password_reset(user.email, token, user.display_name)
        self.audit.log(
            "user.password_reset_requested",
            tenant_id=user.tenant_id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

    async def reset_password(self, token: str, new_password: str) -> None:
        # Checked before consuming so a weak password does not burn the token
        validate_password(new_password)
        password_hash = self._hash_password(new_password)
        with self.store.transaction():
            row = self.store.consume_password_reset_token(token or "", utcnow())
            if row is None:
                raise ValidationError("Invalid or expired reset token")
            self.store.update_password(row.user_id, password_hash)
        await self.logout_all(row.user_id)
        self.metrics.record_password_reset()
        user = self.store.get_user(row.user_id)
        self.audit.log(
            "user.password_reset",
            tenant_id=user.tenant_id if user else None,
            user_id=row.user_id,
            resource_type="user",
            resource_id=row.user_id,
        )

    # -- lookups -------------------------------------------------------------

    async def user_exists(self, email: str) -> bool:
        return self.store.get_user_by_email((email or "").strip().lower()) is not None

    async def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found")
        return tenant

    # -- federated login -----------------------------------------------------

    def _link_kwargs(self, identity: OAuthIdentity) -> dict:
        return {
            "provider_username": identity.provider_username,
            "provider_email": identity.email,
            "access_token": self.cipher.encrypt(identity.access_token),
            "refresh_token": self.cipher.encrypt(identity.refresh_token),
            "token_expires_at": identity.token_expires_at,
            "profile_data": identity.profile_data,
        }

    def _oauth_session(
        self,
        user: User,
        tenant: Tenant,
        identity: OAuthIdentity,
        client: ClientContext,
        *,
        action: str,
        is_new_user: bool = False,
    ) -> AuthResult:
        self.store.record_login(user.id, client.ip_address)
        tokens, session = self.create_session(user, client)
        self.audit.log(
            action,
            tenant_id=tenant.id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            metadata={"method": "oauth", "provider": identity.provider},
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        self.metrics.record_login("oauth", True)
        return AuthResult(user, tenant, tokens, session.id, is_new_user=is_new_user)

    def _login_linked(
        self, link: OAuthProviderLink, identity: OAuthIdentity, client: ClientContext
    ) -> AuthResult:
        user = self.store.get_user(link.user_id)
        if user is None or user.status != "active":
            self.metrics.record_login("oauth", False)
            raise AuthenticationError("Account is not active")
        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None:
            raise ServerError("Account is misconfigured")
        self.store.touch_oauth_link(link.id)
        return self._oauth_session(user, tenant, identity, client, action="user.login")

    async def login_with_oauth(
        self, identity: OAuthIdentity, client: Optional[ClientContext] = None
    ) -> AuthResult:
        """Register or log in a provider-verified identity.

        Precedence: an existing (provider, subject) link logs in its user;
        otherwise an existing account with the provider-verified email gets
        the provider linked; otherwise a new tenant and user are created.
        """
        client = client or ClientContext()
        link = self.store.get_oauth_link(identity.provider, identity.provider_user_id)
        if link is not None:
            return self._login_linked(link, identity, client)

        email = identity.email.strip().lower() if identity.email else None
        existing = self.store.get_user_by_email(email) if email else None
        if existing is not None:
            if not identity.email_verified:
                self.logger.warning(
                    "oauth_unverified_email_collision",
                    provider=identity.provider,
                    user_id=existing.id,
                )
                raise ConflictError(
                    "An account with this email already exists",
                    detail={"provider": identity.provider},
                )
            if existing.status != "active":
                raise AuthenticationError("Account is not active")
            try:
                self.store.create_oauth_link(
                    existing.id,
                    identity.provider,
                    identity.provider_user_id,
                    **self._link_kwargs(identity),
                )
            except ConstraintViolation as exc:
                raise ConflictError(
                    f"A different {identity.provider} account is already linked",
                    detail=exc.detail,
                ) from exc
            tenant = self.store.get_tenant(existing.tenant_id)
            if tenant is None:
                raise ServerError("Account is misconfigured")
            self.logger.info("oauth_provider_linked", user_id=existing.id, provider=identity.provider)
            return self._oauth_session(existing, tenant, identity, client, action="user.oauth_linked")

        user_email = email or f"{identity.provider}-{identity.provider_user_id}@oauth.local"
        display_name = (
            identity.display_name
            or identity.provider_username
            or f"User-{identity.provider_user_id[:8]}"
        )
        try:
            with self.store.transaction():
                tenant = self.store.create_tenant(user_email, tenant_slug(user_email), user_email)
                user = self.store.create_user(
                    tenant.id,
                    user_email,
                    role="owner",
                    display_name=display_name,
                    username=identity.provider_username,
                    email_verified=bool(email) and identity.email_verified,
                )
                self.store.create_oauth_link(
                    user.id,
                    identity.provider,
                    identity.provider_user_id,
                    **self._link_kwargs(identity),
                )
        except ConstraintViolation as exc:
            # A concurrent callback for the same subject may have won
            link = self.store.get_oauth_link(identity.provider, identity.provider_user_id)
            if link is not None:
                return self._login_linked(link, identity, client)
            raise ConflictError("Account could not be created", detail=exc.detail) from exc

        self.metrics.record_registration("oauth")
        self.logger.info(
            "user_registered", user_id=user.id, tenant_id=tenant.id, method="oauth", provider=identity.provider
        )
        return self._oauth_session(
            user, tenant, identity, client, action="user.registered", is_new_user=True
        )
