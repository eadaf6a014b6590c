from __future__ import annotations

from datetime import datetime
from typing import ContextManager, List, Optional, Protocol, Tuple

from tenantauth.storage.models import (
    AuditLogEntry,
    EmailVerificationToken,
    GatewayPrincipal,
    GatewayToken,
    OAuthProviderLink,
    PasswordResetToken,
    Session,
    Tenant,
    User,
)


class CredentialStore(Protocol):
    """Query/transaction surface shared by MemoryStore and PostgresStore."""

    def transaction(self) -> ContextManager[None]: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...

    def create_tenant(
        self, name: str, slug: str, contact_email: str, *, plan_type: str = ..., plan_status: str = ...
    ) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def create_user(self, tenant_id: str, email: str, **fields) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def record_login(self, user_id: str, ip_address: Optional[str]) -> None: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, user_id: str) -> None: ...

    def delete_user(self, user_id: str) -> None: ...

    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthProviderLink]: ...

    def list_oauth_links(self, user_id: str) -> List[OAuthProviderLink]: ...

    def create_oauth_link(self, user_id: str, provider: str, provider_user_id: str, **fields) -> OAuthProviderLink: ...

    def touch_oauth_link(self, link_id: str) -> None: ...

    def create_session(
        self,
        user_id: str,
        access_token_hash: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        refresh_token_expires_at: datetime,
        **client,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def validate_access_session(
        self, access_token_hash: str, now: datetime
    ) -> Optional[Tuple[Session, User]]: ...

    def get_active_session_by_refresh_hash(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_hash: str,
        access_token_hash: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        refresh_token_expires_at: datetime,
    ) -> bool: ...

    def revoke_session_by_access_hash(self, access_token_hash: str, reason: str) -> int: ...

    def revoke_user_sessions(self, user_id: str, reason: str) -> int: ...

    def create_email_verification_token(
        self, user_id: str, token: str, email: str, expires_at: datetime
    ) -> EmailVerificationToken: ...

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]: ...

    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime, **client
    ) -> PasswordResetToken: ...

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def create_gateway_token(
        self, token: str, user_id: str, tenant_id: str, expires_at: datetime
    ) -> GatewayToken: ...

    def find_gateway_principal(self, token: str, now: datetime) -> Optional[GatewayPrincipal]: ...

    def revoke_gateway_token(self, token: str, *, user_id: Optional[str] = None) -> bool: ...

    def insert_audit_log(self, entry: AuditLogEntry) -> None: ...

    def list_audit_logs(self, **filters) -> List[AuditLogEntry]: ...

    def count_audit_events(self, action: str, *, ip_address: str, since: datetime) -> int: ...
