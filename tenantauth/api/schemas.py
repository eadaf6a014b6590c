from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tenantauth.logging import get_correlation_id

MAX_STRING_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "not_configured",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- requests ----------------------------------------------------------------


class RegisterRequest(CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    display_name: Optional[str] = Field(None, max_length=255)
    locale: str = Field("en", max_length=10)
    country: Optional[str] = Field(None, max_length=2)


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class EmailRequest(CamelModel):
    email: str = Field(..., min_length=1, max_length=254)


class TokenRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class PasswordResetConfirm(CamelModel):
    token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    new_password: str = Field(..., max_length=256)


class AppleClientRequest(CamelModel):
    id_token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    user: Optional[Dict[str, Any]] = None


class GoogleCallbackRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    state: Optional[str] = Field(None, max_length=512)


# -- responses -----------------------------------------------------------------


class UserSummary(CamelModel):
    id: str
    email: str
    display_name: Optional[str] = None
    email_verified: bool


class UserProfile(UserSummary):
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str
    locale: str
    timezone: str
    tenant_id: str
    created_at: datetime


class TenantSummary(CamelModel):
    id: str
    name: str
    plan_type: str


class TokensResponse(CamelModel):
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"


class AuthResponse(CamelModel):
    user: UserSummary
    tenant: TenantSummary
    tokens: TokensResponse
    is_new_user: bool = False


class ProfileResponse(CamelModel):
    user: UserProfile
    tenant: TenantSummary


class MessageResponse(CamelModel):
    message: str


class ExistsResponse(CamelModel):
    exists: bool


class UrlResponse(CamelModel):
    url: str


class EmailVerifiedResponse(CamelModel):
    message: str
    email_verified: bool


class GatewayTokenResponse(CamelModel):
    gateway_token: str
    expires_at: datetime


class AuditEntryResponse(CamelModel):
    id: str
    action: str
    status: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class AuditListResponse(CamelModel):
    items: List[AuditEntryResponse]
    limit: int
    offset: int
