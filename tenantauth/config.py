from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and token-lifecycle service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Cache used for rate-limit counters; optional",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI (no SMTP, ephemeral secrets)",
    )
    # Token signing
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    provider_token_key: str | None = env_field(
        None,
        "PROVIDER_TOKEN_KEY",
        description="Fernet key for OAuth provider tokens at rest; derived from the refresh secret when unset",
    )
    # Gateway tokens for the realtime connection authority
    gateway_token_ttl_minutes: int = env_field(60, "GATEWAY_TOKEN_TTL_MINUTES", ge=1)
    gateway_static_token: str | None = env_field(
        None,
        "GATEWAY_STATIC_TOKEN",
        description="Shared secret accepted when no dynamic gateway token matches",
    )
    # Sign in with Apple
    apple_client_id: str | None = env_field(None, "APPLE_CLIENT_ID")
    apple_team_id: str | None = env_field(None, "APPLE_TEAM_ID")
    apple_key_id: str | None = env_field(None, "APPLE_KEY_ID")
    apple_private_key: str | None = env_field(None, "APPLE_PRIVATE_KEY")
    apple_redirect_uri: str | None = env_field(None, "APPLE_REDIRECT_URI")
    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantAuth", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    email_max_attempts: int = env_field(3, "EMAIL_MAX_ATTEMPTS", ge=1)
    email_retry_base_seconds: float = env_field(1.0, "EMAIL_RETRY_BASE_SECONDS", ge=0)
    # Rate limits (requests per window)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT", ge=1)
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS", ge=1)
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT", ge=1)
    register_rate_window_seconds: int = env_field(3600, "REGISTER_RATE_WINDOW_SECONDS", ge=1)
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT", ge=1)
    password_reset_rate_window_seconds: int = env_field(
        3600, "PASSWORD_RESET_RATE_WINDOW_SECONDS", ge=1
    )
    email_verify_rate_limit: int = env_field(5, "EMAIL_VERIFY_RATE_LIMIT", ge=1)
    email_verify_rate_window_seconds: int = env_field(
        3600, "EMAIL_VERIFY_RATE_WINDOW_SECONDS", ge=1
    )
    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", "gateway_static_token", "apple_private_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("apple_private_key")
    @classmethod
    def _unescape_private_key(cls, value: str | None) -> str | None:
        # PEM material usually arrives through env files with literal "\n"
        if value and "\\n" in value:
            return value.replace("\\n", "\n")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        if not self.access_token_secret:
            logger.warning(
                "token_secret_generated",
                secret_name="ACCESS_TOKEN_SECRET",
                message="Tokens will not survive a restart",
            )
            self.access_token_secret = secrets.token_urlsafe(64)
        if not self.refresh_token_secret:
            logger.warning(
                "token_secret_generated",
                secret_name="REFRESH_TOKEN_SECRET",
                message="Tokens will not survive a restart",
            )
            self.refresh_token_secret = secrets.token_urlsafe(64)
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self

    @property
    def apple_configured(self) -> bool:
        return bool(
            self.apple_client_id
            and self.apple_team_id
            and self.apple_key_id
            and self.apple_private_key
        )

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
