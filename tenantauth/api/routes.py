from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Form, Header, Query, Request, Response

from tenantauth.api.schemas import (
    AppleClientRequest,
    AuditEntryResponse,
    AuditListResponse,
    AuthResponse,
    EmailRequest,
    EmailVerifiedResponse,
    Envelope,
    ExistsResponse,
    GatewayTokenResponse,
    GoogleCallbackRequest,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    TenantSummary,
    TokenRequest,
    TokensResponse,
    UrlResponse,
    UserProfile,
    UserSummary,
)
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthResult, ClientContext
from tenantauth.service.errors import AuthenticationError, ForbiddenError, RateLimitedError
from tenantauth.service.rate_limit import RateDecision
from tenantauth.service.runtime import Runtime, get_runtime
from tenantauth.service.tokens import TokenPair
from tenantauth.storage.models import Tenant, User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@dataclass
class AuthContext:
    user: User
    access_token: str


def _ok(data: Any) -> Envelope:
    payload = data.model_dump(mode="json", by_alias=True) if data is not None else None
    return Envelope(status="ok", data=payload)


def _client(request: Request, user_agent: Optional[str]) -> ClientContext:
    return ClientContext(
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )


def _apply_rate_headers(response: Response, decision: RateDecision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_seconds)


def _enforce(decision: RateDecision, response: Response) -> None:
    _apply_rate_headers(response, decision)
    if not decision.allowed:
        raise RateLimitedError(
            "Too many requests, please try again later",
            detail={"retryAfter": decision.reset_seconds},
        )


def _tokens(pair: TokenPair) -> TokensResponse:
    return TokensResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_token_expires_at=pair.access_expires_at,
        refresh_token_expires_at=pair.refresh_expires_at,
    )


def _user_summary(user: User) -> UserSummary:
    return UserSummary(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        email_verified=user.email_verified,
    )


def _tenant_summary(tenant: Tenant) -> TenantSummary:
    return TenantSummary(id=tenant.id, name=tenant.name, plan_type=tenant.plan_type)


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_summary(result.user),
        tenant=_tenant_summary(result.tenant),
        tokens=_tokens(result.tokens),
        is_new_user=result.is_new_user,
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing or invalid authorization header")
    token = authorization[len("Bearer "):].strip()
    user = await runtime.auth.validate_access_token(token)
    return AuthContext(user=user, access_token=token)


def require_role(*roles: str) -> Callable[..., Any]:
    async def _dependency(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        if principal.user.role not in roles:
            raise ForbiddenError("Insufficient permissions")
        return principal

    return _dependency


# -- registration and login ------------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    client = _client(request, user_agent)
    _enforce(await runtime.rate_limits.check_registration(client.ip_address or "unknown"), response)
    result = await runtime.auth.register(
        body.email,
        body.password,
        display_name=body.display_name,
        locale=body.locale,
        country=body.country,
        client=client,
    )
    return _ok(_auth_response(result))


@router.post("/check-user", response_model=Envelope)
async def check_user(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    exists = await runtime.auth.user_exists(body.email)
    return _ok(ExistsResponse(exists=exists))


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    client = _client(request, user_agent)
    _enforce(await runtime.rate_limits.check_login(client.ip_address or "unknown"), response)
    result = await runtime.auth.login(body.email, body.password, client=client)
    return _ok(_auth_response(result))


@router.post("/logout", response_model=Envelope)
async def logout(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal.access_token, user=principal.user)
    return _ok(MessageResponse(message="Logged out successfully"))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout_all(principal.user.id)
    return _ok(MessageResponse(message="All sessions logged out"))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest, runtime: Runtime = Depends(get_runtime)):
    pair = await runtime.auth.refresh(body.refresh_token)
    return _ok(_tokens(pair))


@router.get("/me", response_model=Envelope)
async def me(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = principal.user
    tenant = await runtime.auth.get_tenant(user.tenant_id)
    profile = UserProfile(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        email_verified=user.email_verified,
        username=user.username,
        avatar_url=user.avatar_url,
        role=user.role,
        locale=user.locale,
        timezone=user.timezone,
        tenant_id=user.tenant_id,
        created_at=user.created_at,
    )
    return _ok(ProfileResponse(user=profile, tenant=_tenant_summary(tenant)))


# -- email verification and password reset ---------------------------------------


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: TokenRequest, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.auth.verify_email(body.token)
    return _ok(
        EmailVerifiedResponse(
            message="Email verified successfully", email_verified=user.email_verified
        )
    )


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(
    response: Response,
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    _enforce(await runtime.rate_limits.check_email_verification(principal.user.id), response)
    await runtime.auth.resend_verification(principal.user.id)
    return _ok(MessageResponse(message="Verification email sent"))


@router.post("/reset-password/request", response_model=Envelope)
async def request_password_reset(
    body: EmailRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    client = _client(request, user_agent)
    _enforce(
        await runtime.rate_limits.check_password_reset(client.ip_address or "unknown"), response
    )
    await runtime.auth.request_password_reset(body.email, client=client)
    return _ok(MessageResponse(message="If the email exists, a reset link has been sent"))


@router.post("/reset-password/confirm", response_model=Envelope)
async def confirm_password_reset(body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.reset_password(body.token, body.new_password)
    return _ok(MessageResponse(message="Password reset successfully"))


# -- federated login -----------------------------------------------------------------


@router.get("/oauth/apple/url", response_model=Envelope)
async def apple_auth_url(
    state: Optional[str] = Query(None, max_length=512),
    scope: Optional[str] = Query(None, max_length=128),
    runtime: Runtime = Depends(get_runtime),
):
    apple = runtime.require_apple()
    scopes = scope.split() if scope else None
    return _ok(UrlResponse(url=apple.get_auth_url(state=state, scope=scopes)))


@router.post("/oauth/apple/callback", response_model=Envelope)
async def apple_server_callback(
    request: Request,
    id_token: str = Form(...),
    code: Optional[str] = Form(None),
    user: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    apple = runtime.require_apple()
    result = await apple.handle_server_callback(
        code=code,
        id_token=id_token,
        user=user,
        state=state,
        client=_client(request, user_agent),
    )
    return _ok(_auth_response(result))


@router.post("/oauth/apple/client", response_model=Envelope)
async def apple_client_callback(
    body: AppleClientRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    apple = runtime.require_apple()
    result = await apple.handle_client_callback(
        id_token=body.id_token, user=body.user, client=_client(request, user_agent)
    )
    return _ok(_auth_response(result))


@router.get("/oauth/google/url", response_model=Envelope)
async def google_auth_url(
    state: Optional[str] = Query(None, max_length=512),
    runtime: Runtime = Depends(get_runtime),
):
    google = runtime.require_google()
    return _ok(UrlResponse(url=google.get_auth_url(state=state)))


@router.post("/oauth/google/callback", response_model=Envelope)
async def google_callback(
    body: GoogleCallbackRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    google = runtime.require_google()
    result = await google.handle_callback(body.code, client=_client(request, user_agent))
    return _ok(_auth_response(result))


# -- gateway tokens --------------------------------------------------------------------


@router.post("/gateway-token", response_model=Envelope)
async def exchange_gateway_token(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    grant = await runtime.gateway.exchange(principal.access_token, user=principal.user)
    return _ok(GatewayTokenResponse(gateway_token=grant.token, expires_at=grant.expires_at))


@router.post("/gateway-token/revoke", response_model=Envelope)
async def revoke_gateway_token(
    body: TokenRequest,
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.gateway.revoke(body.token, user=principal.user)
    return _ok(MessageResponse(message="Gateway token revoked"))


# -- audit -------------------------------------------------------------------------------


@router.get("/audit", response_model=Envelope)
async def list_audit_log(
    action: Optional[str] = Query(None, max_length=64),
    user_id: Optional[UUID] = Query(None, alias="userId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(require_role("owner", "admin")),
    runtime: Runtime = Depends(get_runtime),
):
    entries = runtime.audit.query_by_tenant(
        principal.user.tenant_id,
        limit=limit,
        offset=offset,
        action=action,
        user_id=str(user_id) if user_id else None,
        start_date=start_date,
        end_date=end_date,
    )
    items = [
        AuditEntryResponse(
            id=entry.id,
            action=entry.action,
            status=entry.status,
            tenant_id=entry.tenant_id,
            user_id=entry.user_id,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            metadata=entry.metadata or {},
            ip_address=entry.ip_address,
            error_message=entry.error_message,
            created_at=entry.created_at,
        )
        for entry in entries
    ]
    return _ok(AuditListResponse(items=items, limit=limit, offset=offset))
