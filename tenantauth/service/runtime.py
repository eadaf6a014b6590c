from __future__ import annotations

from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from fastapi import Request

from tenantauth.config import Settings, get_settings
from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditLogger
from tenantauth.service.auth import AuthService
from tenantauth.service.email import EmailService
from tenantauth.service.email_queue import EmailQueue
from tenantauth.service.errors import NotConfiguredError
from tenantauth.service.gateway import GatewayTokenBroker
from tenantauth.service.metrics import AuthMetrics
from tenantauth.service.oauth.apple import AppleOAuth, AppleOAuthConfig
from tenantauth.service.oauth.common import ProviderTokenCipher
from tenantauth.service.oauth.google import GoogleOAuth, GoogleOAuthConfig
from tenantauth.service.rate_limit import AuthRateLimiter, FixedWindowLimiter, RatePolicy
from tenantauth.service.tokens import TokenService
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.postgres import PostgresStore
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Owns the store, the cache and every service for one application.

    Built by the application lifespan and closed on shutdown; route
    dependencies reach it through ``request.app.state.runtime``.
    """

    def __init__(self, settings: Optional[Settings] = None, *, http_transport=None) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=s.use_memory_store,
            test_mode=s.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore() if s.use_memory_store else PostgresStore(s.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=mask_url_password(s.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        if s.redis_url:
            # Sync client in test mode so it is not bound to one event loop
            self.cache = SyncRedisCache(s.redis_url) if s.test_mode else RedisCache(s.redis_url)

        self.metrics = AuthMetrics()
        self.tokens = TokenService(
            s.access_token_secret,
            s.refresh_token_secret,
            access_ttl=timedelta(minutes=s.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=s.refresh_token_ttl_days),
        )
        self.audit = AuditLogger(self.store)
        self.email = EmailService(
            smtp_host=None if s.test_mode else s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
            base_url=s.app_base_url,
        )
        self.email_queue = EmailQueue(
            self.email,
            max_attempts=s.email_max_attempts,
            retry_base_seconds=s.email_retry_base_seconds,
        )
        self.cipher = ProviderTokenCipher(s.provider_token_key or s.refresh_token_secret)
        self.auth = AuthService(
            self.store,
            self.tokens,
            audit=self.audit,
            email_queue=self.email_queue,
            metrics=self.metrics,
            cipher=self.cipher,
            email_verification_ttl=timedelta(hours=s.email_verification_ttl_hours),
            password_reset_ttl=timedelta(minutes=s.password_reset_ttl_minutes),
        )
        self.gateway = GatewayTokenBroker(
            self.store,
            self.auth,
            self.audit,
            ttl=timedelta(minutes=s.gateway_token_ttl_minutes),
            static_token=s.gateway_static_token,
        )
        self.rate_limits = AuthRateLimiter(
            FixedWindowLimiter(self.cache),
            login=RatePolicy("login", s.login_rate_limit, s.login_rate_window_seconds),
            register=RatePolicy("register", s.register_rate_limit, s.register_rate_window_seconds),
            password_reset=RatePolicy(
                "password-reset", s.password_reset_rate_limit, s.password_reset_rate_window_seconds
            ),
            email_verify=RatePolicy(
                "email-verify", s.email_verify_rate_limit, s.email_verify_rate_window_seconds
            ),
        )
        self.apple: Optional[AppleOAuth] = None
        if s.apple_configured:
            self.apple = AppleOAuth(
                AppleOAuthConfig(
                    client_id=s.apple_client_id,
                    team_id=s.apple_team_id,
                    key_id=s.apple_key_id,
                    private_key=s.apple_private_key,
                    redirect_uri=s.apple_redirect_uri,
                ),
                self.auth,
                transport=http_transport,
            )
        self.google: Optional[GoogleOAuth] = None
        if s.google_configured:
            self.google = GoogleOAuth(
                GoogleOAuthConfig(
                    client_id=s.google_client_id,
                    client_secret=s.google_client_secret,
                    redirect_uri=s.google_redirect_uri,
                ),
                self.auth,
                transport=http_transport,
            )
        logger.info(
            "runtime_init_completed",
            store_type="memory" if s.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            apple_configured=self.apple is not None,
            google_configured=self.google is not None,
        )

    def require_apple(self) -> AppleOAuth:
        if self.apple is None:
            raise NotConfiguredError("Apple Sign In is not configured")
        return self.apple

    def require_google(self) -> GoogleOAuth:
        if self.google is None:
            raise NotConfiguredError("Google OAuth is not configured")
        return self.google

    async def start(self) -> None:
        self.store.verify_connection()
        if self.cache is not None:
            try:
                self.cache.verify_connection()
            except Exception as exc:
                # The limiter fails open per request while Redis is down
                logger.warning(
                    "redis_unreachable_at_startup",
                    redis_url=mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        await self.email_queue.start()

    async def close(self) -> None:
        await self.email_queue.stop()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        self.store.close()
        logger.info("runtime_closed")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
