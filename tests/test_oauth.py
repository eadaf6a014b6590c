"""Tests for federated login (Sign in with Apple and Google).

Provider endpoints are served by an httpx.MockTransport; identity tokens are
signed with locally generated RSA keys published as a JWK set.

Covers:
- Register-or-login precedence (link, verified-email link, create)
- Identity token verification (signature, audience, key id)
- Apple server and client callbacks, client secret generation, auth URLs
- Google authorization-code flow
- JWK parsing and provider token encryption at rest
"""

import base64
import json
import time
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from tenantauth.service.auth import ClientContext
from tenantauth.service.errors import AuthenticationError, ConflictError, ServerError
from tenantauth.service.oauth.apple import (
    APPLE_ISSUER,
    APPLE_KEYS_URL,
    APPLE_REVOKE_URL,
    APPLE_TOKEN_URL,
    AppleOAuth,
    AppleOAuthConfig,
)
from tenantauth.service.oauth.common import (
    OAuthIdentity,
    OAuthVerificationError,
    ProviderTokenCipher,
    rsa_public_key_from_jwk,
    truthy_claim,
)
from tenantauth.service.oauth.google import (
    GOOGLE_CERTS_URL,
    GOOGLE_TOKEN_URL,
    GoogleOAuth,
    GoogleOAuthConfig,
)

APPLE_CLIENT_ID = "com.example.app"
GOOGLE_CLIENT_ID = "google-client-id"
CLIENT = ClientContext(ip_address="198.51.100.4", user_agent="pytest-agent")


def _b64_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


class SigningKey:
    """RSA key pair published as a JWK, used to mint provider id tokens."""

    def __init__(self, kid: str = "test-kid", bits: int = 2048):
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
        numbers = self.private_key.public_key().public_numbers()
        self.jwk = {
            "kty": "RSA",
            "kid": kid,
            "use": "sig",
            "alg": "RS256",
            "n": _b64_uint(numbers.n),
            "e": _b64_uint(numbers.e),
        }

    def sign(self, claims, *, kid=None):
        return jwt.encode(
            claims, self.private_key, algorithm="RS256", headers={"kid": kid or self.jwk["kid"]}
        )


@pytest.fixture(scope="module")
def signing_key():
    return SigningKey()


@pytest.fixture(scope="module")
def apple_private_key():
    return ec.generate_private_key(ec.SECP256R1())


def _apple_claims(sub="apple-sub-1", **overrides):
    now = int(time.time())
    claims = {
        "iss": APPLE_ISSUER,
        "aud": APPLE_CLIENT_ID,
        "sub": sub,
        "email": "apple.user@example.com",
        "email_verified": "true",
        "is_private_email": "false",
        "iat": now,
        "exp": now + 600,
    }
    claims.update(overrides)
    return claims


class ProviderStub:
    """Records token-endpoint requests and serves the JWK set."""

    def __init__(self, signing_key, *, token_status=200, token_body=None):
        self.signing_key = signing_key
        self.token_status = token_status
        self.token_body = token_body or {}
        self.token_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in (APPLE_KEYS_URL, GOOGLE_CERTS_URL):
            return httpx.Response(200, json={"keys": [self.signing_key.jwk]})
        if url in (APPLE_TOKEN_URL, APPLE_REVOKE_URL, GOOGLE_TOKEN_URL):
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            return httpx.Response(self.token_status, json=self.token_body)
        return httpx.Response(404)


def _apple(auth_service, stub, apple_private_key):
    pem = apple_private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    config = AppleOAuthConfig(
        client_id=APPLE_CLIENT_ID,
        team_id="TEAM123456",
        key_id="KEY1234567",
        private_key=pem,
        redirect_uri="https://auth.example.com/auth/oauth/apple/callback",
    )
    return AppleOAuth(config, auth_service, transport=httpx.MockTransport(stub))


class TestRegisterOrLogin:
    async def test_new_identity_creates_owner(self, auth_service, memory_store):
        identity = OAuthIdentity(
            provider="google",
            provider_user_id="g-123",
            email="Fresh@Example.com",
            email_verified=True,
            display_name="Fresh User",
        )
        result = await auth_service.login_with_oauth(identity, CLIENT)

        assert result.is_new_user is True
        assert result.user.email == "fresh@example.com"
        assert result.user.email_verified is True
        assert result.user.role == "owner"
        assert result.user.password_hash is None
        assert memory_store.get_oauth_link("google", "g-123").user_id == result.user.id
        assert memory_store.audit_logs[-1].action == "user.registered"

    async def test_existing_link_wins_over_email(self, auth_service, memory_store):
        first = await auth_service.login_with_oauth(
            OAuthIdentity("apple", "sub-1", email="one@example.com", email_verified=True), CLIENT
        )
        again = await auth_service.login_with_oauth(
            OAuthIdentity("apple", "sub-1", email="changed@example.com", email_verified=True), CLIENT
        )

        assert again.is_new_user is False
        assert again.user.id == first.user.id
        assert memory_store.audit_logs[-1].action == "user.login"

    async def test_verified_email_links_existing_account(self, auth_service, memory_store):
        registered = await auth_service.register("linked@example.com", "Sup3r$ecret")
        result = await auth_service.login_with_oauth(
            OAuthIdentity("google", "g-link", email="LINKED@example.com", email_verified=True), CLIENT
        )

        assert result.user.id == registered.user.id
        assert result.is_new_user is False
        assert len(memory_store.users) == 1
        assert memory_store.get_oauth_link("google", "g-link").user_id == registered.user.id
        assert memory_store.audit_logs[-1].action == "user.oauth_linked"

    async def test_unverified_email_collision_conflicts(self, auth_service, memory_store):
        await auth_service.register("taken@example.com", "Sup3r$ecret")

        with pytest.raises(ConflictError):
            await auth_service.login_with_oauth(
                OAuthIdentity("google", "g-evil", email="taken@example.com", email_verified=False),
                CLIENT,
            )
        assert memory_store.oauth_links == {}

    async def test_missing_email_gets_placeholder(self, auth_service):
        result = await auth_service.login_with_oauth(
            OAuthIdentity("apple", "001234.abcdef", provider_username="relay"), CLIENT
        )

        assert result.user.email == "apple-001234.abcdef@oauth.local"
        assert result.user.email_verified is False
        assert result.user.display_name == "relay"

    async def test_display_name_falls_back_to_subject(self, auth_service):
        result = await auth_service.login_with_oauth(OAuthIdentity("apple", "abcdefghijk"), CLIENT)
        assert result.user.display_name == "User-abcdefgh"

    async def test_provider_tokens_encrypted_at_rest(self, auth_service, memory_store):
        await auth_service.login_with_oauth(
            OAuthIdentity(
                "google",
                "g-tokens",
                email="tokens@example.com",
                email_verified=True,
                access_token="provider-access",
                refresh_token="provider-refresh",
            ),
            CLIENT,
        )
        link = memory_store.get_oauth_link("google", "g-tokens")

        assert link.access_token != "provider-access"
        assert auth_service.cipher.decrypt(link.access_token) == "provider-access"
        assert auth_service.cipher.decrypt(link.refresh_token) == "provider-refresh"


class TestAppleSignIn:
    async def test_client_flow_creates_user_with_profile(
        self, auth_service, memory_store, signing_key, apple_private_key
    ):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)
        id_token = signing_key.sign(_apple_claims())

        result = await apple.handle_client_callback(
            id_token=id_token,
            user={"name": {"firstName": "Ada", "lastName": "Lovelace"}},
            client=CLIENT,
        )

        assert result.is_new_user is True
        assert result.user.email == "apple.user@example.com"
        assert result.user.email_verified is True
        assert result.user.display_name == "Ada Lovelace"
        link = memory_store.get_oauth_link("apple", "apple-sub-1")
        assert link.profile_data["is_private_email"] is False
        assert link.profile_data["name"] == "Ada Lovelace"

    async def test_wrong_audience_rejected(self, auth_service, signing_key, apple_private_key):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)
        id_token = signing_key.sign(_apple_claims(aud="com.someone.else"))

        with pytest.raises(AuthenticationError) as excinfo:
            await apple.handle_client_callback(id_token=id_token, client=CLIENT)
        assert excinfo.value.message.startswith("Apple ID token verification failed")

    async def test_unknown_key_id_rejected(self, auth_service, signing_key, apple_private_key):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)
        id_token = signing_key.sign(_apple_claims(), kid="rotated-away")

        with pytest.raises(AuthenticationError):
            await apple.handle_client_callback(id_token=id_token, client=CLIENT)

    async def test_token_signed_by_other_key_rejected(self, auth_service, signing_key, apple_private_key):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)
        impostor = SigningKey(kid=signing_key.jwk["kid"])

        with pytest.raises(AuthenticationError):
            await apple.handle_client_callback(id_token=impostor.sign(_apple_claims()), client=CLIENT)

    async def test_server_flow_exchanges_code(
        self, auth_service, memory_store, signing_key, apple_private_key
    ):
        stub = ProviderStub(
            signing_key,
            token_body={"access_token": "apple-at", "refresh_token": "apple-rt", "expires_in": 3600},
        )
        apple = _apple(auth_service, stub, apple_private_key)
        user_payload = json.dumps({"name": {"firstName": "Grace", "lastName": "Hopper"}})

        result = await apple.handle_server_callback(
            code="auth-code",
            id_token=signing_key.sign(_apple_claims(sub="apple-sub-2")),
            user=user_payload,
            state="state-1",
            client=CLIENT,
        )

        assert result.user.display_name == "Grace Hopper"
        form = stub.token_requests[0]
        assert form["code"] == "auth-code"
        assert form["grant_type"] == "authorization_code"
        assert form["client_id"] == APPLE_CLIENT_ID
        secret_claims = jwt.decode(
            form["client_secret"],
            apple_private_key.public_key(),
            algorithms=["ES256"],
            audience=APPLE_ISSUER,
        )
        assert secret_claims["iss"] == "TEAM123456"
        assert secret_claims["sub"] == APPLE_CLIENT_ID
        assert jwt.get_unverified_header(form["client_secret"])["kid"] == "KEY1234567"

        link = memory_store.get_oauth_link("apple", "apple-sub-2")
        assert auth_service.cipher.decrypt(link.refresh_token) == "apple-rt"
        assert link.token_expires_at is not None

    async def test_malformed_user_payload_ignored(self, auth_service, signing_key, apple_private_key):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)

        result = await apple.handle_server_callback(
            code=None,
            id_token=signing_key.sign(_apple_claims(sub="apple-sub-3")),
            user="{not json",
            client=CLIENT,
        )
        assert result.user.display_name == "User-apple-su"

    async def test_unsigned_payload_email_ignored(
        self, auth_service, memory_store, signing_key, apple_private_key
    ):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)
        claims = _apple_claims(sub="apple-sub-5")
        del claims["email"], claims["email_verified"]

        result = await apple.handle_client_callback(
            id_token=signing_key.sign(claims),
            user={"email": "victim@example.com", "name": {"firstName": "Eve"}},
            client=CLIENT,
        )

        assert result.user.email == "apple-apple-sub-5@oauth.local"
        assert result.user.display_name == "Eve"
        link = memory_store.get_oauth_link("apple", "apple-sub-5")
        assert link.profile_data["email"] is None
        registered = await auth_service.register("victim@example.com", "Sup3r$ecret")
        assert registered.user.email == "victim@example.com"

    async def test_failed_code_exchange_rejected(
        self, auth_service, memory_store, signing_key, apple_private_key
    ):
        stub = ProviderStub(signing_key, token_status=400, token_body={"error": "invalid_grant"})
        apple = _apple(auth_service, stub, apple_private_key)

        with pytest.raises(AuthenticationError) as excinfo:
            await apple.handle_server_callback(
                code="stale-code",
                id_token=signing_key.sign(_apple_claims(sub="apple-sub-4")),
                client=CLIENT,
            )
        assert excinfo.value.message == "Apple authorization code exchange failed"
        assert memory_store.users == {}

    async def test_revoke_refresh_token(self, auth_service, signing_key, apple_private_key):
        stub = ProviderStub(signing_key)
        apple = _apple(auth_service, stub, apple_private_key)

        await apple.revoke_token("apple-refresh")

        form = stub.token_requests[-1]
        assert form["token"] == "apple-refresh"
        assert form["token_type_hint"] == "refresh_token"
        assert form["client_id"] == APPLE_CLIENT_ID

    async def test_revoke_failure_raises(self, auth_service, signing_key, apple_private_key):
        stub = ProviderStub(signing_key, token_status=400)
        apple = _apple(auth_service, stub, apple_private_key)

        with pytest.raises(ServerError):
            await apple.revoke_token("apple-refresh")

    def test_auth_url(self, auth_service, signing_key, apple_private_key):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)
        parsed = urlparse(apple.get_auth_url(state="xyz"))
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.netloc == "appleid.apple.com"
        assert params["client_id"] == APPLE_CLIENT_ID
        assert params["response_type"] == "code id_token"
        assert params["response_mode"] == "form_post"
        assert params["scope"] == "name email"
        assert params["state"] == "xyz"

    def test_auth_url_generates_state(self, auth_service, signing_key, apple_private_key):
        apple = _apple(auth_service, ProviderStub(signing_key), apple_private_key)
        params = parse_qs(urlparse(apple.get_auth_url(scope=["email"])).query)
        assert len(params["state"][0]) == 64
        assert params["scope"] == ["email"]


class TestGoogleOAuth:
    def _google(self, auth_service, stub):
        config = GoogleOAuthConfig(
            client_id=GOOGLE_CLIENT_ID,
            client_secret="google-secret",
            redirect_uri="https://auth.example.com/auth/oauth/google/callback",
        )
        return GoogleOAuth(config, auth_service, transport=httpx.MockTransport(stub))

    def _id_token(self, signing_key, **overrides):
        now = int(time.time())
        claims = {
            "iss": "accounts.google.com",
            "aud": GOOGLE_CLIENT_ID,
            "sub": "google-sub-1",
            "email": "google.user@example.com",
            "email_verified": True,
            "name": "Google User",
            "picture": "https://example.com/avatar.png",
            "iat": now,
            "exp": now + 600,
        }
        claims.update(overrides)
        return signing_key.sign(claims)

    async def test_callback_creates_user(self, auth_service, memory_store, signing_key):
        stub = ProviderStub(
            signing_key,
            token_body={
                "access_token": "g-at",
                "expires_in": 3599,
                "id_token": self._id_token(signing_key),
            },
        )
        google = self._google(auth_service, stub)

        result = await google.handle_callback("google-code", client=CLIENT)

        assert result.is_new_user is True
        assert result.user.email == "google.user@example.com"
        assert result.user.email_verified is True
        assert result.user.display_name == "Google User"
        assert stub.token_requests[0]["client_secret"] == "google-secret"
        link = memory_store.get_oauth_link("google", "google-sub-1")
        assert link.profile_data["picture"] == "https://example.com/avatar.png"

    async def test_https_issuer_accepted(self, auth_service, signing_key):
        stub = ProviderStub(
            signing_key,
            token_body={"id_token": self._id_token(signing_key, iss="https://accounts.google.com")},
        )
        result = await self._google(auth_service, stub).handle_callback("code", client=CLIENT)
        assert result.user.email == "google.user@example.com"

    async def test_rejected_exchange(self, auth_service, signing_key):
        stub = ProviderStub(signing_key, token_status=400, token_body={"error": "invalid_grant"})

        with pytest.raises(AuthenticationError) as excinfo:
            await self._google(auth_service, stub).handle_callback("bad", client=CLIENT)
        assert excinfo.value.message.startswith("Google sign-in failed")

    async def test_missing_id_token_rejected(self, auth_service, signing_key):
        stub = ProviderStub(signing_key, token_body={"access_token": "g-at"})
        with pytest.raises(AuthenticationError):
            await self._google(auth_service, stub).handle_callback("code", client=CLIENT)

    def test_auth_url(self, auth_service, signing_key):
        url = self._google(auth_service, ProviderStub(signing_key)).get_auth_url(state="abc")
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        assert params["response_type"] == "code"
        assert params["scope"] == "openid email profile"
        assert params["access_type"] == "offline"
        assert params["state"] == "abc"


class TestJwkAndCipher:
    @pytest.mark.parametrize("bits", [2048, 4096])
    def test_rsa_key_from_jwk(self, bits):
        key = SigningKey(bits=bits)
        public_key = rsa_public_key_from_jwk(key.jwk)
        assert public_key.key_size == bits
        assert public_key.public_numbers() == key.private_key.public_key().public_numbers()

    def test_non_rsa_jwk_rejected(self):
        with pytest.raises(OAuthVerificationError):
            rsa_public_key_from_jwk({"kty": "EC", "crv": "P-256"})

    def test_malformed_jwk_rejected(self):
        with pytest.raises(OAuthVerificationError):
            rsa_public_key_from_jwk({"kty": "RSA", "e": "AQAB"})

    @pytest.mark.parametrize(
        "value,expected",
        [(True, True), ("true", True), ("TRUE", True), (False, False), ("false", False), (None, False)],
    )
    def test_truthy_claim(self, value, expected):
        assert truthy_claim(value) is expected

    def test_cipher_round_trip(self):
        cipher = ProviderTokenCipher("any passphrase")
        encrypted = cipher.encrypt("secret-value")
        assert encrypted != "secret-value"
        assert cipher.decrypt(encrypted) == "secret-value"
        assert cipher.encrypt(None) is None
        assert cipher.decrypt(None) is None

    def test_cipher_accepts_fernet_key(self):
        key = Fernet.generate_key().decode()
        encrypted = ProviderTokenCipher(key).encrypt("value")
        assert Fernet(key.encode()).decrypt(encrypted.encode()) == b"value"

    def test_decrypt_with_wrong_key(self):
        encrypted = ProviderTokenCipher("key-one").encrypt("value")
        assert ProviderTokenCipher("key-two").decrypt(encrypted) is None
