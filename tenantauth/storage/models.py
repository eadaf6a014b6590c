from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

PLAN_TYPES = ("free", "pro", "enterprise", "custom")
PLAN_STATUSES = ("active", "suspended", "cancelled", "trial")
USER_ROLES = ("owner", "admin", "member", "viewer")
OAUTH_PROVIDERS = ("apple", "google", "github", "discord")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    contact_email: str
    plan_type: str = "free"
    plan_status: str = "trial"
    display_name: Optional[str] = None
    limits: Dict = field(default_factory=dict)
    settings: Dict = field(default_factory=dict)
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class User:
    id: str
    tenant_id: str
    email: str
    # Write-only: never serialized back to a caller
    password_hash: Optional[str] = field(default=None, repr=False)
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    locale: str = "en"
    timezone: str = "UTC"
    country: Optional[str] = None
    role: str = "member"
    permissions: List[str] = field(default_factory=list)
    status: str = "active"
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    login_count: int = 0
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class OAuthProviderLink:
    id: str
    user_id: str
    provider: str
    provider_user_id: str
    provider_username: Optional[str] = None
    provider_email: Optional[str] = None
    # Stored encrypted; see service.oauth.ProviderTokenCipher
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    scope: List[str] = field(default_factory=list)
    profile_data: Dict = field(default_factory=dict)
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class Session:
    """One issued access/refresh pair, tracked by token hashes only."""

    id: str
    user_id: str
    access_token_hash: str
    access_token_expires_at: datetime
    refresh_token_hash: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    device_name: Optional[str] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    last_activity_at: datetime = field(default_factory=utcnow)
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerificationToken:
    id: str
    user_id: str
    token: str
    email: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class GatewayToken:
    id: str
    token: str
    user_id: str
    tenant_id: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class GatewayPrincipal:
    """Identity bound to a validated gateway token."""

    user_id: Optional[str]
    tenant_id: Optional[str]
    email: Optional[str] = None
    source: str = "dynamic"


@dataclass
class AuditLogEntry:
    action: str
    id: str = field(default_factory=new_id)
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    changes: Optional[Dict] = None
    metadata: Dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str = "success"
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
