from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    OAUTH_PROVIDERS,
    PLAN_STATUSES,
    PLAN_TYPES,
    USER_ROLES,
    AuditLogEntry,
    EmailVerificationToken,
    GatewayPrincipal,
    GatewayToken,
    OAuthProviderLink,
    PasswordResetToken,
    Session,
    Tenant,
    User,
    new_id,
    utcnow,
)

_STATE_ATTRS = (
    "tenants",
    "users",
    "oauth_links",
    "sessions",
    "verification_tokens",
    "reset_tokens",
    "gateway_tokens",
    "audit_logs",
)


class MemoryStore:
    """In-process credential store for tests and local development.

    Every operation runs under a single re-entrant lock; ``transaction``
    holds the lock for its whole body and restores a snapshot on error.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.oauth_links: Dict[str, OAuthProviderLink] = {}
        self.sessions: Dict[str, Session] = {}
        self.verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.gateway_tokens: Dict[str, GatewayToken] = {}
        self.audit_logs: List[AuditLogEntry] = []
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()

    # -- lifecycle -------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _STATE_ATTRS}
            try:
                yield
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- tenants ---------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        slug: str,
        contact_email: str,
        *,
        plan_type: str = "free",
        plan_status: str = "trial",
    ) -> Tenant:
        if plan_type not in PLAN_TYPES:
            raise ConstraintViolation("invalid plan", {"field": "plan_type"})
        if plan_status not in PLAN_STATUSES:
            raise ConstraintViolation("invalid plan", {"field": "plan_status"})
        with self._data_lock:
            if any(t.slug == slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            tenant = Tenant(
                id=new_id(),
                name=name,
                slug=slug,
                contact_email=contact_email,
                plan_type=plan_type,
                plan_status=plan_status,
            )
            self.tenants[tenant.id] = tenant
            return copy.copy(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant or tenant.deleted_at:
                return None
            return copy.copy(tenant)

    # -- users -----------------------------------------------------------

    def _find_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        for user in self.users.values():
            if user.email.lower() == lowered and user.deleted_at is None:
                return user
        return None

    def create_user(
        self,
        tenant_id: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        role: str = "member",
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        locale: str = "en",
        country: Optional[str] = None,
        email_verified: bool = False,
        metadata: Optional[dict] = None,
    ) -> User:
        if role not in USER_ROLES:
            raise ConstraintViolation("invalid role", {"field": "role"})
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"field": "tenant_id"})
            if self._find_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=new_id(),
                tenant_id=tenant_id,
                email=email.lower(),
                password_hash=password_hash,
                role=role,
                display_name=display_name,
                username=username,
                locale=locale,
                country=country,
                email_verified=email_verified,
                email_verified_at=now if email_verified else None,
                password_changed_at=now if password_hash else None,
                metadata=dict(metadata or {}),
            )
            self.users[user.id] = user
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return None
            return copy.copy(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return copy.copy(user) if user else None

    def record_login(self, user_id: str, ip_address: Optional[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = utcnow()
            user.last_login_ip = ip_address
            user.login_count += 1
            user.updated_at = user.last_login_at

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            user.password_changed_at = utcnow()
            user.updated_at = user.password_changed_at

    def mark_email_verified(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.email_verified = True
            user.email_verified_at = utcnow()
            user.updated_at = user.email_verified_at

    def delete_user(self, user_id: str) -> None:
        """Hard-delete a user together with its sessions, links and tokens."""
        with self._data_lock:
            self.users.pop(user_id, None)
            for table in (
                self.oauth_links,
                self.sessions,
                self.verification_tokens,
                self.reset_tokens,
                self.gateway_tokens,
            ):
                for key in [k for k, row in table.items() if row.user_id == user_id]:
                    del table[key]
            for entry in self.audit_logs:
                if entry.user_id == user_id:
                    entry.user_id = None

    # -- oauth provider links ---------------------------------------------

    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthProviderLink]:
        with self._data_lock:
            for link in self.oauth_links.values():
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    return copy.copy(link)
            return None

    def list_oauth_links(self, user_id: str) -> List[OAuthProviderLink]:
        with self._data_lock:
            return [copy.copy(link) for link in self.oauth_links.values() if link.user_id == user_id]

    def create_oauth_link(
        self,
        user_id: str,
        provider: str,
        provider_user_id: str,
        *,
        provider_username: Optional[str] = None,
        provider_email: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        profile_data: Optional[dict] = None,
    ) -> OAuthProviderLink:
        if provider not in OAUTH_PROVIDERS:
            raise ConstraintViolation("unsupported provider", {"field": "provider"})
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            for link in self.oauth_links.values():
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    raise ConstraintViolation(
                        "provider account already linked", {"field": "provider_user_id"}
                    )
                if link.user_id == user_id and link.provider == provider:
                    raise ConstraintViolation(
                        "provider already linked to user", {"field": "provider"}
                    )
            link = OAuthProviderLink(
                id=new_id(),
                user_id=user_id,
                provider=provider,
                provider_user_id=provider_user_id,
                provider_username=provider_username,
                provider_email=provider_email,
                access_token=access_token,
                refresh_token=refresh_token,
                token_expires_at=token_expires_at,
                profile_data=dict(profile_data or {}),
                last_used_at=utcnow(),
            )
            self.oauth_links[link.id] = link
            return copy.copy(link)

    def touch_oauth_link(self, link_id: str) -> None:
        with self._data_lock:
            link = self.oauth_links.get(link_id)
            if link:
                link.last_used_at = utcnow()
                link.updated_at = link.last_used_at

    # -- sessions ----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        access_token_hash: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        refresh_token_expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            for existing in self.sessions.values():
                if existing.access_token_hash == access_token_hash:
                    raise ConstraintViolation("token hash collision", {"field": "access_token_hash"})
            session = Session(
                id=new_id(),
                user_id=user_id,
                access_token_hash=access_token_hash,
                access_token_expires_at=access_token_expires_at,
                refresh_token_hash=refresh_token_hash,
                refresh_token_expires_at=refresh_token_expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
                device_type=device_type,
            )
            self.sessions[session.id] = session
            return copy.copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.copy(session) if session else None

    def validate_access_session(
        self, access_token_hash: str, now: datetime
    ) -> Optional[Tuple[Session, User]]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.access_token_hash != access_token_hash:
                    continue
                if not session.is_active or session.access_token_expires_at <= now:
                    return None
                user = self.users.get(session.user_id)
                if not user or user.deleted_at is not None:
                    return None
                session.last_activity_at = now
                return copy.copy(session), copy.copy(user)
            return None

    def get_active_session_by_refresh_hash(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for session in self.sessions.values():
                if (
                    session.refresh_token_hash == refresh_token_hash
                    and session.is_active
                    and session.refresh_token_expires_at is not None
                    and session.refresh_token_expires_at > now
                ):
                    return copy.copy(session)
            return None

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_hash: str,
        access_token_hash: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        refresh_token_expires_at: datetime,
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or not session.is_active
                or session.refresh_token_hash != expected_refresh_hash
            ):
                return False
            now = utcnow()
            session.access_token_hash = access_token_hash
            session.access_token_expires_at = access_token_expires_at
            session.refresh_token_hash = refresh_token_hash
            session.refresh_token_expires_at = refresh_token_expires_at
            session.last_activity_at = now
            session.updated_at = now
            return True

    @staticmethod
    def _revoke(session: Session, reason: str) -> None:
        now = utcnow()
        session.is_active = False
        session.revoked_at = now
        session.revoked_reason = reason
        session.updated_at = now

    def revoke_session_by_access_hash(self, access_token_hash: str, reason: str) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.access_token_hash == access_token_hash and session.is_active:
                    self._revoke(session, reason)
                    revoked += 1
            return revoked

    def revoke_user_sessions(self, user_id: str, reason: str) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.user_id == user_id and session.is_active:
                    self._revoke(session, reason)
                    revoked += 1
            return revoked

    # -- one-time tokens ---------------------------------------------------

    def create_email_verification_token(
        self, user_id: str, token: str, email: str, expires_at: datetime
    ) -> EmailVerificationToken:
        with self._data_lock:
            row = EmailVerificationToken(
                id=new_id(), user_id=user_id, token=token, email=email, expires_at=expires_at
            )
            self.verification_tokens[row.id] = row
            return copy.copy(row)

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            for row in self.verification_tokens.values():
                if row.token == token and row.used_at is None and row.expires_at > now:
                    row.used_at = now
                    return copy.copy(row)
            return None

    def create_password_reset_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordResetToken:
        with self._data_lock:
            row = PasswordResetToken(
                id=new_id(),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.reset_tokens[row.id] = row
            return copy.copy(row)

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for row in self.reset_tokens.values():
                if row.token == token and row.used_at is None and row.expires_at > now:
                    row.used_at = now
                    return copy.copy(row)
            return None

    # -- gateway tokens ----------------------------------------------------

    def create_gateway_token(
        self, token: str, user_id: str, tenant_id: str, expires_at: datetime
    ) -> GatewayToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if token in self.gateway_tokens:
                raise ConstraintViolation("gateway token collision", {"field": "token"})
            row = GatewayToken(
                id=new_id(),
                token=token,
                user_id=user_id,
                tenant_id=tenant_id,
                expires_at=expires_at,
            )
            self.gateway_tokens[token] = row
            return copy.copy(row)

    def find_gateway_principal(self, token: str, now: datetime) -> Optional[GatewayPrincipal]:
        with self._data_lock:
            row = self.gateway_tokens.get(token)
            if not row or row.revoked_at is not None or row.expires_at <= now:
                return None
            user = self.users.get(row.user_id)
            if not user or user.deleted_at is not None:
                return None
            return GatewayPrincipal(user_id=row.user_id, tenant_id=row.tenant_id, email=user.email)

    def revoke_gateway_token(self, token: str, *, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            row = self.gateway_tokens.get(token)
            if not row or row.revoked_at is not None:
                return False
            if user_id is not None and row.user_id != user_id:
                return False
            row.revoked_at = utcnow()
            return True

    # -- audit -------------------------------------------------------------

    def insert_audit_log(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_logs.append(copy.deepcopy(entry))

    def list_audit_logs(
        self,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            rows = [
                entry
                for entry in self.audit_logs
                if (tenant_id is None or entry.tenant_id == tenant_id)
                and (user_id is None or entry.user_id == user_id)
                and (action is None or entry.action == action)
                and (start_date is None or entry.created_at >= start_date)
                and (end_date is None or entry.created_at <= end_date)
            ]
            # Stable newest-first: later appends win ties on created_at
            ordered = [
                entry
                for _, entry in sorted(
                    enumerate(rows), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True
                )
            ]
            return [copy.deepcopy(entry) for entry in ordered[offset : offset + limit]]

    def count_audit_events(self, action: str, *, ip_address: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for entry in self.audit_logs
                if entry.action == action
                and entry.ip_address == ip_address
                and entry.created_at > since
            )
