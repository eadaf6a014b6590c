"""Tests for gateway token exchange and the realtime validation chain."""

import re
from datetime import timedelta

import pytest

from tenantauth.service.audit import AuditLogger
from tenantauth.service.errors import AuthenticationError, NotFoundError, ServerError
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.service.gateway import (
    GatewayTokenBroker,
    Verdict,
    looks_like_gateway_token,
    token_from_connect_message,
)
from tenantauth.storage.models import utcnow

STATIC_TOKEN = "static-shared-secret"


@pytest.fixture
def broker(memory_store, auth_service):
    return GatewayTokenBroker(memory_store, auth_service, AuditLogger(memory_store))


@pytest.fixture
def static_broker(memory_store, auth_service):
    return GatewayTokenBroker(
        memory_store, auth_service, AuditLogger(memory_store), static_token=STATIC_TOKEN
    )


async def _registered(auth_service, email="gateway@example.com"):
    return await auth_service.register(email, "Sup3r$ecret")


class TestExchange:
    async def test_exchange_issues_hex_token(self, broker, auth_service, memory_store):
        result = await _registered(auth_service)
        before = utcnow()

        grant = await broker.exchange(result.tokens.access_token)

        assert re.fullmatch(r"[0-9a-f]{64}", grant.token)
        assert timedelta(minutes=59) < grant.expires_at - before <= timedelta(hours=1, seconds=1)
        row = memory_store.gateway_tokens[grant.token]
        assert row.user_id == result.user.id
        assert row.tenant_id == result.tenant.id
        entry = memory_store.audit_logs[-1]
        assert entry.action == "gateway_token.created"
        assert entry.metadata["expiresAt"] == grant.expires_at.isoformat()

    async def test_exchange_requires_live_session(self, broker, auth_service):
        result = await _registered(auth_service)
        await auth_service.logout_all(result.user.id)

        with pytest.raises(AuthenticationError):
            await broker.exchange(result.tokens.access_token)

    async def test_each_exchange_is_distinct(self, broker, auth_service):
        result = await _registered(auth_service)
        first = await broker.exchange(result.tokens.access_token)
        second = await broker.exchange(result.tokens.access_token)
        assert first.token != second.token

    async def test_repeated_collisions_are_server_error(self, broker, auth_service, memory_store, monkeypatch):
        result = await _registered(auth_service)

        def _collide(*args, **kwargs):
            raise ConstraintViolation("gateway token collision", {"field": "token"})

        monkeypatch.setattr(memory_store, "create_gateway_token", _collide)

        with pytest.raises(ServerError):
            await broker.exchange(result.tokens.access_token)


class TestValidationChain:
    async def test_dynamic_token_accepted(self, broker, auth_service):
        result = await _registered(auth_service)
        grant = await broker.exchange(result.tokens.access_token)

        principal = broker.validate(grant.token)
        assert principal.user_id == result.user.id
        assert principal.tenant_id == result.tenant.id
        assert principal.source == "dynamic"

    async def test_expired_token_rejected(self, broker, auth_service, memory_store):
        result = await _registered(auth_service)
        grant = await broker.exchange(result.tokens.access_token)
        memory_store.gateway_tokens[grant.token].expires_at = utcnow() - timedelta(seconds=1)

        assert broker.validate(grant.token) is None

    async def test_revoked_token_rejected(self, broker, auth_service):
        result = await _registered(auth_service)
        grant = await broker.exchange(result.tokens.access_token)

        await broker.revoke(grant.token, user=result.user)
        assert broker.validate(grant.token) is None

    def test_empty_token_rejected_even_with_static(self, static_broker):
        assert static_broker.validate("") is None
        assert static_broker.validate(None) is None

    def test_unknown_token_without_static_rejected(self, broker):
        assert broker.validate("f" * 64) is None
        assert broker.validate("not-hex") is None

    def test_static_token_accepted(self, static_broker):
        principal = static_broker.validate(STATIC_TOKEN)
        assert principal.source == "static"
        assert principal.user_id is None

    def test_wrong_static_token_rejected(self, static_broker):
        assert static_broker.validate("static-shared-secreT") is None

    def test_store_failure_falls_through_to_static(self, static_broker, memory_store, monkeypatch):
        def _unreachable(*args, **kwargs):
            raise ConnectionError("database unreachable")

        monkeypatch.setattr(memory_store, "find_gateway_principal", _unreachable)

        assert static_broker.validate("a" * 64) is None
        assert static_broker.validate(STATIC_TOKEN).source == "static"

    def test_store_failure_never_accepts(self, broker, memory_store, monkeypatch):
        def _down(*args, **kwargs):
            raise ConnectionError("down")

        monkeypatch.setattr(memory_store, "find_gateway_principal", _down)
        assert broker._dynamic("a" * 64) == (Verdict.PASS, None)
        assert broker.validate("a" * 64) is None


class TestRevoke:
    async def test_revoke_audited(self, broker, auth_service, memory_store):
        result = await _registered(auth_service)
        grant = await broker.exchange(result.tokens.access_token)

        await broker.revoke(grant.token, user=result.user)
        assert memory_store.audit_logs[-1].action == "gateway_token.revoked"

    async def test_other_user_cannot_revoke(self, broker, auth_service):
        owner = await _registered(auth_service, "owner@example.com")
        other = await _registered(auth_service, "other@example.com")
        grant = await broker.exchange(owner.tokens.access_token)

        with pytest.raises(NotFoundError):
            await broker.revoke(grant.token, user=other.user)
        assert broker.validate(grant.token) is not None

    async def test_revoke_unknown(self, broker, auth_service):
        result = await _registered(auth_service)
        with pytest.raises(NotFoundError):
            await broker.revoke("0" * 64, user=result.user)


class TestConnectMessage:
    def test_token_extracted(self):
        assert token_from_connect_message({"type": "connect", "auth": {"token": "abc"}}) == "abc"

    @pytest.mark.parametrize(
        "message",
        [None, "connect", {}, {"auth": "abc"}, {"auth": {}}, {"auth": {"token": ""}}, {"auth": {"token": 5}}],
    )
    def test_malformed_messages(self, message):
        assert token_from_connect_message(message) is None

    async def test_validate_connect_message(self, broker, auth_service):
        result = await _registered(auth_service)
        grant = await broker.exchange(result.tokens.access_token)

        principal = broker.validate_connect_message({"auth": {"token": grant.token}})
        assert principal.user_id == result.user.id
        assert broker.validate_connect_message({"auth": {}}) is None

    def test_looks_like_gateway_token(self):
        assert looks_like_gateway_token("0123456789abcdef" * 4)
        assert not looks_like_gateway_token("0123456789ABCDEF" * 4)
        assert not looks_like_gateway_token("abc")
