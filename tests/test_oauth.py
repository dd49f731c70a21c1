"""Tests for the OAuth credential issuer."""

import base64
import hashlib
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from trustgate.audit import AuditLogger
from trustgate.auth import (
    AccessToken,
    OAuthIssuer,
    constant_time_equals,
    derive_code_challenge,
    parse_token_expiration,
    verify_code_challenge,
)
from trustgate.auth.pkce import UNRESERVED_CHARACTERS
from trustgate.errors import ConfigurationError, UpstreamError


@pytest.fixture
def audit(test_settings):
    return AuditLogger(test_settings, file_logging=False)


@pytest.fixture
def oauth_issuer(test_settings, audit):
    """OAuth issuer against github.com."""
    return OAuthIssuer(test_settings, audit=audit)


def _token_payload(**overrides):
    payload = {
        "access_token": "gho_test-access-token",
        "token_type": "bearer",
        "expires_in": 28800,
        "refresh_token": "ghr_test-refresh-token",
        "scope": "repo,read:user",
    }
    payload.update(overrides)
    return payload


class TestPKCE:
    """Tests for PKCE and state helpers."""

    def test_code_challenge_derivation(self):
        """The challenge is the unpadded base64url SHA-256 of the verifier."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )

        assert derive_code_challenge(verifier) == expected
        assert derive_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_verify_code_challenge(self):
        verifier = "a" * 64
        challenge = derive_code_challenge(verifier)

        assert verify_code_challenge(verifier, challenge)
        assert not verify_code_challenge("a" * 63 + "b", challenge)

    def test_non_ascii_verifier_does_not_match(self):
        challenge = derive_code_challenge("a" * 43)

        assert not verify_code_challenge("\u00e9" * 43, challenge)

    def test_generate_pkce(self, oauth_issuer):
        """Verifiers are 128 unreserved characters with a matching challenge."""
        grant = oauth_issuer.generate_pkce()

        assert len(grant.code_verifier) == 128
        assert set(grant.code_verifier) <= set(UNRESERVED_CHARACTERS)
        assert "=" not in grant.code_challenge
        assert grant.code_challenge_method == "S256"
        assert grant.code_challenge == derive_code_challenge(grant.code_verifier)

    def test_generate_state(self, oauth_issuer):
        state = oauth_issuer.generate_state()

        assert len(state) == 32
        assert set(state) <= set(UNRESERVED_CHARACTERS)
        assert state != oauth_issuer.generate_state()

    def test_validate_state(self):
        """State comparison rejects empty, short and altered values."""
        state = "s" * 32

        assert OAuthIssuer.validate_state(state, state)
        assert not OAuthIssuer.validate_state(state[:-1] + "t", state)
        assert not OAuthIssuer.validate_state(state[:-1], state)
        assert not OAuthIssuer.validate_state("", "")
        assert not OAuthIssuer.validate_state(None, state)

    def test_constant_time_equals(self):
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals("abc", "abd")
        assert not constant_time_equals("abc", "abcd")


class TestOAuthIssuer:
    """Tests for OAuthIssuer."""

    def test_requires_credentials(self, test_settings):
        settings = test_settings.model_copy(update={"github_oauth_client_secret": ""})

        with pytest.raises(ConfigurationError, match="client ID and secret"):
            OAuthIssuer(settings)

    def test_disabled(self, test_settings):
        settings = test_settings.model_copy(update={"github_oauth_enabled": False})

        with pytest.raises(ConfigurationError, match="disabled"):
            OAuthIssuer(settings)

    def test_endpoints(self, oauth_issuer):
        assert oauth_issuer.authorization_endpoint == "https://github.com/login/oauth/authorize"
        assert oauth_issuer.token_endpoint == "https://github.com/login/oauth/access_token"
        assert oauth_issuer.revocation_endpoint == "https://github.com/login/oauth/revoke"

    def test_enterprise_endpoints(self, test_settings):
        settings = test_settings.model_copy(update={"github_host": "ghe.example.com"})
        issuer = OAuthIssuer(settings)

        assert issuer.authorization_endpoint == (
            "https://ghe.example.com/login/oauth/authorize"
        )

    def test_start_flow(self, oauth_issuer):
        """The authorization URL carries the S256 challenge of the returned verifier."""
        flow = oauth_issuer.start_flow()
        query = parse_qs(urlparse(flow.authorization_url).query)

        assert flow.authorization_url.startswith("https://github.com/login/oauth/authorize?")
        assert query["client_id"] == ["test-client-id"]
        assert query["redirect_uri"] == ["http://localhost:8000/oauth/callback"]
        assert query["scope"] == ["repo read:user"]
        assert query["response_type"] == ["code"]
        assert query["state"] == [flow.state]
        assert query["code_challenge_method"] == ["S256"]
        assert query["code_challenge"] == [derive_code_challenge(flow.code_verifier)]

    def test_extra_params_override(self, oauth_issuer):
        url = oauth_issuer.build_authorization_url(
            "state", "challenge", extra_params={"scope": "gist", "login": "octocat"}
        )
        query = parse_qs(urlparse(url).query)

        assert query["scope"] == ["gist"]
        assert query["login"] == ["octocat"]

    def test_config_omits_secret(self, oauth_issuer):
        config = oauth_issuer.get_config()

        assert config["client_id"] == "test-client-id"
        assert "test-client-secret" not in config.values()

    @pytest.mark.asyncio
    async def test_exchange_code_success(self, oauth_issuer, audit, wire_client):
        """Successful exchange returns the token and audits it."""
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = wire_client(
                mock_client, post=httpx.Response(200, json=_token_payload())
            )

            token = await oauth_issuer.exchange_code("code-123", "verifier-abc", "state-xyz")

        assert isinstance(token, AccessToken)
        assert token.access_token == "gho_test-access-token"
        assert token.refresh_token == "ghr_test-refresh-token"
        assert token.scopes == ["repo", "read:user"]
        assert token.expires_at is not None

        _, kwargs = mock_instance.post.call_args
        assert kwargs["data"]["code"] == "code-123"
        assert kwargs["data"]["code_verifier"] == "verifier-abc"
        assert kwargs["data"]["grant_type"] == "authorization_code"
        assert kwargs["data"]["state"] == "state-xyz"
        assert kwargs["data"]["redirect_uri"] == "http://localhost:8000/oauth/callback"
        assert kwargs["headers"]["Accept"] == "application/json"

        event = audit.events[-1]
        assert event.action == "oauth_token_exchange"
        assert event.outcome == "success"
        assert event.source == "auth"
        assert event.details["client_id"] == "test-client-id"

    @pytest.mark.asyncio
    async def test_exchange_code_defaults_scope(self, oauth_issuer, wire_client):
        """Missing scope falls back to the configured scopes."""
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(
                mock_client,
                post=httpx.Response(200, json={"access_token": "gho_x"}),
            )

            token = await oauth_issuer.exchange_code("code", "verifier")

        assert token.scopes == ["repo", "read:user"]
        assert token.token_type == "Bearer"
        assert token.expires_in == 3600

    @pytest.mark.asyncio
    async def test_exchange_code_body_error(self, oauth_issuer, audit, wire_client):
        """An error in a 200 body is raised and audited as a failure."""
        body = {
            "error": "bad_verification_code",
            "error_description": "The code passed is incorrect or expired.",
        }
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(200, json=body))

            with pytest.raises(UpstreamError, match="OAuth error: The code passed"):
                await oauth_issuer.exchange_code("code", "verifier")

        event = audit.events[-1]
        assert event.action == "oauth_token_exchange"
        assert event.outcome == "failure"

    @pytest.mark.asyncio
    async def test_exchange_code_http_error(self, oauth_issuer, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(401, text="bad credentials"))

            with pytest.raises(UpstreamError) as exc_info:
                await oauth_issuer.exchange_code("code", "verifier")

        assert exc_info.value.status_code == 401
        assert "401 Unauthorized" in str(exc_info.value)
        assert exc_info.value.body == "bad credentials"

    @pytest.mark.asyncio
    async def test_exchange_code_missing_access_token(self, oauth_issuer, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(200, json={"scope": "repo"}))

            with pytest.raises(UpstreamError, match="no access_token"):
                await oauth_issuer.exchange_code("code", "verifier")

    @pytest.mark.asyncio
    async def test_exchange_code_invalid_json(self, oauth_issuer, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(200, text="access_token=x"))

            with pytest.raises(UpstreamError, match="invalid JSON"):
                await oauth_issuer.exchange_code("code", "verifier")

    @pytest.mark.asyncio
    async def test_exchange_code_transport_error(self, oauth_issuer, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.ConnectError("connection refused"))

            with pytest.raises(UpstreamError, match="Token exchange failed"):
                await oauth_issuer.exchange_code("code", "verifier")

    @pytest.mark.asyncio
    async def test_exchange_code_redirect_uri_override(self, oauth_issuer, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = wire_client(
                mock_client, post=httpx.Response(200, json=_token_payload())
            )

            await oauth_issuer.exchange_code(
                "code", "verifier", redirect_uri="http://other.example/cb"
            )

        data = mock_instance.post.call_args.kwargs["data"]
        assert data["redirect_uri"] == "http://other.example/cb"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            ["unexpected"],
            "gho_plain",
            {"access_token": "gho_x", "expires_in": "soon"},
            {"access_token": ["gho_x"]},
        ],
    )
    async def test_exchange_code_malformed_body(self, oauth_issuer, audit, wire_client, body):
        """Malformed 2xx bodies become upstream errors and are audited."""
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(200, json=body))

            with pytest.raises(UpstreamError):
                await oauth_issuer.exchange_code("code", "verifier")

        event = audit.events[-1]
        assert event.action == "oauth_token_exchange"
        assert event.outcome == "failure"

    @pytest.mark.asyncio
    async def test_refresh_malformed_body(self, oauth_issuer, audit, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(200, json=["unexpected"]))

            with pytest.raises(UpstreamError, match="expected a JSON object"):
                await oauth_issuer.refresh("ghr_old")

        assert audit.events[-1].action == "oauth_token_refresh"
        assert audit.events[-1].outcome == "failure"

    @pytest.mark.asyncio
    async def test_tampered_verifier(self, oauth_issuer, wire_client):
        """A tampered verifier no longer matches the issued challenge.

        The issuer forwards it as-is and the server rejects the exchange.
        """
        flow = oauth_issuer.start_flow()
        challenge = parse_qs(urlparse(flow.authorization_url).query)["code_challenge"][0]
        tampered = flow.code_verifier[:-1] + (
            "A" if flow.code_verifier[-1] != "A" else "B"
        )

        assert verify_code_challenge(flow.code_verifier, challenge)
        assert not verify_code_challenge(tampered, challenge)

        rejection = {"error": "invalid_grant", "error_description": "PKCE verification failed"}
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = wire_client(mock_client, post=httpx.Response(200, json=rejection))

            with pytest.raises(UpstreamError, match="PKCE verification failed"):
                await oauth_issuer.exchange_code("code", tampered, flow.state)

        assert mock_instance.post.call_args.kwargs["data"]["code_verifier"] == tampered

    @pytest.mark.asyncio
    async def test_refresh_rotates_token(self, oauth_issuer, audit, wire_client):
        payload = _token_payload(access_token="gho_new", refresh_token="ghr_new")
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = wire_client(mock_client, post=httpx.Response(200, json=payload))

            token = await oauth_issuer.refresh("ghr_old")

        assert token.access_token == "gho_new"
        assert token.refresh_token == "ghr_new"
        assert mock_instance.post.call_args.kwargs["data"]["grant_type"] == "refresh_token"
        assert audit.events[-1].action == "oauth_token_refresh"

    @pytest.mark.asyncio
    async def test_refresh_keeps_previous_refresh_token(self, oauth_issuer, wire_client):
        """Without a rotated refresh token the previous one is kept."""
        payload = _token_payload(access_token="gho_new")
        del payload["refresh_token"]
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(200, json=payload))

            token = await oauth_issuer.refresh("ghr_old")

        assert token.refresh_token == "ghr_old"

    @pytest.mark.asyncio
    async def test_revoke(self, oauth_issuer, audit, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = wire_client(mock_client, post=httpx.Response(204))

            await oauth_issuer.revoke("gho_x")

        args, kwargs = mock_instance.post.call_args
        assert args[0] == "https://github.com/login/oauth/revoke"
        assert kwargs["data"]["token"] == "gho_x"
        assert audit.events[-1].action == "oauth_token_revocation"
        assert audit.events[-1].outcome == "success"

    @pytest.mark.asyncio
    async def test_revoke_failure(self, oauth_issuer, audit, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, post=httpx.Response(404, text="Not Found"))

            with pytest.raises(UpstreamError, match="Token revocation failed"):
                await oauth_issuer.revoke("gho_x")

        assert audit.events[-1].outcome == "failure"


class TestTokenValidation:
    """Tests for identity endpoint validation."""

    @pytest.mark.asyncio
    async def test_validate_success(self, oauth_issuer, wire_client):
        response = httpx.Response(
            200,
            json={"login": "octocat", "id": 1},
            headers={
                "X-OAuth-Scopes": "repo, read:user",
                "GitHub-Authentication-Token-Expiration": "2030-01-01 00:00:00 UTC",
            },
        )
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = wire_client(mock_client, get=response)

            result = await oauth_issuer.validate("gho_x")

        assert result.valid
        assert result.subject == "octocat"
        assert result.scopes == ["repo", "read:user"]
        assert result.expires_at.year == 2030

        args, kwargs = mock_instance.get.call_args
        assert args[0] == "https://api.github.com/user"
        assert kwargs["headers"]["Authorization"] == "Bearer gho_x"

    @pytest.mark.asyncio
    async def test_validate_rejected(self, oauth_issuer, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, get=httpx.Response(401))

            result = await oauth_issuer.validate("gho_x")

        assert not result.valid
        assert result.error == "Token validation failed: 401 Unauthorized"

    @pytest.mark.asyncio
    async def test_validate_never_raises(self, oauth_issuer, wire_client):
        with patch("httpx.AsyncClient") as mock_client:
            wire_client(mock_client, get=httpx.ConnectTimeout("timed out"))

            result = await oauth_issuer.validate("gho_x")

        assert not result.valid
        assert "timed out" in result.error

    def test_parse_token_expiration(self):
        parsed = parse_token_expiration("2030-06-01 12:30:00 UTC")

        assert parsed.isoformat() == "2030-06-01T12:30:00+00:00"
        assert parse_token_expiration(None) is None
        assert parse_token_expiration("soon") is None
