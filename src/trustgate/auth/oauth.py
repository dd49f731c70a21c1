"""OAuth 2.1 authorization code flow with PKCE."""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from trustgate.audit import AuditLogger, AuditOutcome, AuditSource
from trustgate.auth.identity import fetch_identity
from trustgate.auth.models import (
    AccessToken,
    AuthorizationFlow,
    AuthorizationGrant,
    TokenValidation,
)
from trustgate.auth.pkce import (
    CODE_VERIFIER_LENGTH,
    STATE_LENGTH,
    constant_time_equals,
    derive_code_challenge,
    generate_random_string,
)
from trustgate.config import Settings, get_settings
from trustgate.errors import ConfigurationError, UpstreamError
from trustgate.telemetry import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class OAuthIssuer:
    """OAuth client for GitHub or GitHub Enterprise Server.

    Starts PKCE flows and exchanges, refreshes, validates and revokes
    delegated user tokens. Flow state is returned to the caller and never
    stored here.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        audit: AuditLogger | None = None,
    ):
        """Initialize OAuth issuer.

        Args:
            settings: Settings carrying the OAuth app credentials; cached settings if omitted
            audit: Audit sink for token lifecycle events

        Raises:
            ConfigurationError: OAuth is disabled or client credentials are missing.
        """
        self._settings = settings or get_settings()
        self._audit = audit

        if not self._settings.github_oauth_enabled:
            raise ConfigurationError("OAuth not configured or disabled")
        if not (
            self._settings.github_oauth_client_id
            and self._settings.github_oauth_client_secret
        ):
            raise ConfigurationError("OAuth client ID and secret are required")

    @property
    def client_id(self) -> str:
        return self._settings.github_oauth_client_id

    @property
    def redirect_uri(self) -> str:
        return self._settings.github_oauth_redirect_uri

    @property
    def scopes(self) -> list[str]:
        return self._settings.oauth_scopes

    @property
    def authorization_endpoint(self) -> str:
        """Browser-facing authorize URL on the GitHub web host."""
        return (
            self._settings.github_oauth_auth_url
            or f"{self._settings.github_web_url}/login/oauth/authorize"
        )

    @property
    def token_endpoint(self) -> str:
        """Code and refresh exchange URL."""
        return (
            self._settings.github_oauth_token_url
            or f"{self._settings.github_web_url}/login/oauth/access_token"
        )

    @property
    def revocation_endpoint(self) -> str:
        """Get the token revocation endpoint URL."""
        return f"{self._settings.github_web_url}/login/oauth/revoke"

    def generate_pkce(self) -> AuthorizationGrant:
        """Generate a PKCE verifier and its S256 challenge."""
        code_verifier = generate_random_string(CODE_VERIFIER_LENGTH)
        return AuthorizationGrant(
            code_verifier=code_verifier,
            code_challenge=derive_code_challenge(code_verifier),
        )

    def generate_state(self) -> str:
        """Generate a random state parameter."""
        return generate_random_string(STATE_LENGTH)

    def build_authorization_url(
        self,
        state: str,
        code_challenge: str,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the authorization URL.

        Args:
            state: Opaque value echoed back on the callback
            code_challenge: S256 PKCE challenge
            extra_params: Additional parameters; these override the defaults

        Returns:
            Full authorization URL
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "response_type": "code",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if extra_params:
            params.update(extra_params)
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    def start_flow(self, extra_params: dict[str, str] | None = None) -> AuthorizationFlow:
        """Start an authorization flow.

        The returned verifier must be kept by the caller until the
        callback arrives.
        """
        grant = self.generate_pkce()
        state = self.generate_state()
        return AuthorizationFlow(
            authorization_url=self.build_authorization_url(
                state, grant.code_challenge, extra_params
            ),
            state=state,
            code_verifier=grant.code_verifier,
        )

    @staticmethod
    def validate_state(received: str | None, expected: str | None) -> bool:
        """Compare the callback state with the issued one in constant time."""
        return constant_time_equals(received, expected)

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        state: str | None = None,
        redirect_uri: str | None = None,
    ) -> AccessToken:
        """Trade a callback code and its PKCE verifier for a token grant.

        Args:
            code: Authorization code from the callback
            code_verifier: Verifier issued with the flow
            state: State echoed by the callback
            redirect_uri: Redirect URI sent with the authorization request,
                when it overrode the configured one

        Returns:
            Access token

        Raises:
            UpstreamError: The token endpoint rejected the request.
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self._settings.github_oauth_client_secret,
            "code": code,
            "code_verifier": code_verifier,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri or self.redirect_uri,
        }
        if state:
            data["state"] = state

        with tracer.start_as_current_span("oauth.exchange_code"):
            try:
                payload = await self._token_request(data, "Token exchange failed")
                token = self._parse_token(payload)
            except UpstreamError as e:
                self._log_event("token_exchange", AuditOutcome.FAILURE, {"error": str(e)})
                raise

        self._log_event(
            "token_exchange",
            AuditOutcome.SUCCESS,
            {"expires_in": token.expires_in, "scopes": token.scopes},
        )
        return token

    async def refresh(self, refresh_token: str) -> AccessToken:
        """Refresh an access token.

        The previous refresh token is kept when the server does not
        rotate it.

        Raises:
            UpstreamError: The token endpoint rejected the request.
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self._settings.github_oauth_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        with tracer.start_as_current_span("oauth.refresh"):
            try:
                payload = await self._token_request(data, "Token refresh failed")
                token = self._parse_token(payload, previous_refresh_token=refresh_token)
            except UpstreamError as e:
                self._log_event("token_refresh", AuditOutcome.FAILURE, {"error": str(e)})
                raise

        self._log_event(
            "token_refresh",
            AuditOutcome.SUCCESS,
            {"expires_in": token.expires_in, "scopes": token.scopes},
        )
        return token

    async def validate(self, token: str) -> TokenValidation:
        """Validate an access token against the identity endpoint. Never raises."""
        with tracer.start_as_current_span("oauth.validate"):
            return await fetch_identity(self._settings, token)

    async def revoke(self, token: str) -> None:
        """Revoke an access token.

        Raises:
            UpstreamError: The revocation endpoint rejected the request.
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self._settings.github_oauth_client_secret,
            "token": token,
        }

        with tracer.start_as_current_span("oauth.revoke"):
            try:
                try:
                    async with httpx.AsyncClient() as client:
                        response = await client.post(
                            self.revocation_endpoint,
                            data=data,
                            headers=self._headers(),
                            timeout=self._settings.request_timeout,
                        )
                except httpx.HTTPError as e:
                    raise UpstreamError(f"Token revocation failed: {e}") from e

                if not response.is_success:
                    raise UpstreamError.from_response("Token revocation failed", response)
            except UpstreamError as e:
                self._log_event(
                    "token_revocation", AuditOutcome.FAILURE, {"error": str(e)}
                )
                raise

        self._log_event("token_revocation", AuditOutcome.SUCCESS, {})

    def get_config(self) -> dict[str, Any]:
        """Get the OAuth configuration without the client secret."""
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scopes": self.scopes,
            "authorization_url": self.authorization_endpoint,
            "token_url": self.token_endpoint,
            "revocation_url": self.revocation_endpoint,
            "user_agent": self._settings.user_agent,
        }

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            "User-Agent": self._settings.user_agent,
        }

    async def _token_request(self, data: dict[str, str], failure: str) -> dict[str, Any]:
        """POST to the token endpoint and return the decoded body.

        Args:
            data: Form data for the token request
            failure: Message prefix for errors

        Raises:
            UpstreamError: Transport failure, non-2xx status or body-level error.
        """
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.token_endpoint,
                    data=data,
                    headers=self._headers(),
                    timeout=self._settings.request_timeout,
                )
        except httpx.HTTPError as e:
            logger.error("Token endpoint unreachable: %s", e)
            raise UpstreamError(f"{failure}: {e}") from e

        if not response.is_success:
            logger.error("Token request failed: %s", response.status_code)
            raise UpstreamError.from_response(failure, response)

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{failure}: invalid JSON response",
                status_code=response.status_code,
                body=response.text[:500],
            ) from e

        if not isinstance(payload, dict):
            raise UpstreamError(
                f"{failure}: expected a JSON object",
                status_code=response.status_code,
                body=response.text[:500],
            )
        if payload.get("error"):
            raise UpstreamError(
                f"OAuth error: {payload.get('error_description') or payload['error']}",
                status_code=response.status_code,
            )
        if not payload.get("access_token"):
            raise UpstreamError(f"{failure}: response has no access_token")

        return payload

    def _parse_token(
        self,
        payload: dict[str, Any],
        previous_refresh_token: str | None = None,
    ) -> AccessToken:
        try:
            return AccessToken(
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token") or previous_refresh_token,
                token_type=payload.get("token_type") or "Bearer",
                expires_in=payload.get("expires_in") or 3600,
                scope=payload.get("scope") or " ".join(self.scopes),
            )
        except ValidationError as e:
            raise UpstreamError(f"Malformed token response: {e}") from e

    def _log_event(
        self,
        action: str,
        outcome: AuditOutcome,
        details: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_event(
            f"oauth_{action}",
            outcome,
            AuditSource.AUTH,
            details={**details, "client_id": self.client_id},
        )
