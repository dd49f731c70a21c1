"""Bearer challenge / response handshake for the protected resource."""

import logging
import re
import time
from collections.abc import Callable, Mapping
from typing import Any

from trustgate.audit import AuditLogger, AuditOutcome, AuditSource
from trustgate.auth import (
    AccessToken,
    AuthorizationFlow,
    InstallationCredential,
    InstallationIssuer,
    OAuthIssuer,
    fetch_identity,
)
from trustgate.config import Settings, get_settings
from trustgate.errors import ConfigurationError
from trustgate.gateway.models import (
    GITHUB_SCOPES,
    AdmissionDecision,
    AuthorizationServerInfo,
    AuthResponse,
    BearerValidation,
    ClientRegistrationInfo,
    ProtectedResourceMetadata,
    ResourceServerInfo,
)
from trustgate.policy import PolicyEngine, PolicyEvaluationContext
from trustgate.ratelimit import ActionClass, RateLimiter

logger = logging.getLogger(__name__)

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

REALM = "github-api"
CHALLENGE_SCOPE = "repo read:user"
DEFAULT_ERROR_DESCRIPTION = "Valid GitHub access token required in Authorization header"
PENDING_FLOW_TTL_SECONDS = 10 * 60


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_www_authenticate(params: Mapping[str, str | None]) -> str:
    """Format a Bearer WWW-Authenticate header, skipping empty parameters."""
    parts = [f"{key}={_quote(value)}" for key, value in params.items() if value]
    if not parts:
        return "Bearer"
    return "Bearer " + ", ".join(parts)


class AuthorizationGateway:
    """Ties the issuers, rate limiter and policy engine to HTTP requests.

    A request without an Authorization header, or with a malformed or
    rejected token, gets a 401 challenge pointing at the resource
    metadata. In enterprise mode an authenticated subject must also pass
    the rate limiter (429) and the policy engine (403).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        oauth: OAuthIssuer | None = None,
        app: InstallationIssuer | None = None,
        rate_limiter: RateLimiter | None = None,
        policy_engine: PolicyEngine | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings or get_settings()
        self._clock = clock
        # state -> code verifier, redirect URI override and creation time
        self._pending_flows: dict[str, dict[str, Any]] = {}
        self._oauth = oauth
        self._app = app
        self._rate_limiter = rate_limiter
        self._policy_engine = policy_engine
        self._audit = audit

    @property
    def oauth(self) -> OAuthIssuer | None:
        return self._oauth

    @property
    def app(self) -> InstallationIssuer | None:
        return self._app

    @property
    def resource_metadata_url(self) -> str:
        return self._settings.resource_metadata_url

    def create_challenge(
        self,
        realm: str | None = None,
        scope: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> AuthResponse:
        """Build a 401 response with a Bearer challenge.

        Args:
            realm: Protection realm.
            scope: Scopes required for access.
            error: RFC 6750 error code.
            error_description: Human-readable explanation.

        Returns:
            Challenge response.
        """
        header = format_www_authenticate(
            {
                "realm": realm,
                "scope": scope,
                "error": error,
                "error_description": error_description,
                "resource_metadata": self.resource_metadata_url,
            }
        )
        return AuthResponse(
            status=401,
            headers={
                "WWW-Authenticate": header,
                "Content-Type": "application/json",
            },
            body={
                "error": error or "unauthorized",
                "error_description": error_description or DEFAULT_ERROR_DESCRIPTION,
                "resource_metadata": self.resource_metadata_url,
            },
        )

    def get_authorization_server_metadata(self) -> AuthorizationServerInfo | None:
        """Authorization server entry for the OAuth issuer, if configured."""
        if self._oauth is None:
            return None
        return AuthorizationServerInfo(
            issuer=self._settings.github_web_url,
            authorization_endpoint=self._oauth.authorization_endpoint,
            token_endpoint=self._oauth.token_endpoint,
            scopes_supported=self._oauth.scopes or ["repo", "read:user", "read:org"],
            grant_types_supported=["authorization_code", "refresh_token"],
            token_endpoint_auth_methods_supported=["client_secret_post"],
            revocation_endpoint=self._oauth.revocation_endpoint,
        )

    def get_protected_resource_metadata(self) -> ProtectedResourceMetadata:
        """Describe how clients obtain credentials for this resource."""
        servers: list[AuthorizationServerInfo] = []

        oauth_server = self.get_authorization_server_metadata()
        if oauth_server is not None:
            servers.append(oauth_server)

        if self._app is not None:
            installation = self._app.default_installation_id
            installation_segment = (
                str(installation) if installation is not None else "{installation_id}"
            )
            web_url = self._settings.github_web_url
            servers.append(
                AuthorizationServerInfo(
                    issuer=web_url,
                    authorization_endpoint=f"{web_url}/login/oauth/authorize",
                    token_endpoint=(
                        f"{self._settings.github_api_base_url}/app/installations/"
                        f"{installation_segment}/access_tokens"
                    ),
                    scopes_supported=["repo", "read:user", "read:org"],
                    grant_types_supported=["authorization_code"],
                    token_endpoint_auth_methods_supported=["private_key_jwt"],
                )
            )

        return ProtectedResourceMetadata(
            authorization_servers=servers,
            resource_server=ResourceServerInfo(
                resource_server_id=REALM,
                resource_server_name="GitHub API",
                resource_server_icon="https://github.com/favicon.ico",
                resource_server_description=(
                    "GitHub API access for repository and organization management"
                ),
            ),
            scopes_supported=list(GITHUB_SCOPES),
            client_registration=ClientRegistrationInfo(supported=False),
        )

    async def validate_bearer_token(self, authorization_header: str) -> BearerValidation:
        """Validate an Authorization header value. Never raises.

        A malformed header is rejected without a network call.
        """
        match = _BEARER_PATTERN.match(authorization_header or "")
        token = match.group(1).strip() if match else ""
        if not token:
            return BearerValidation(
                valid=False,
                error="Invalid authorization header format. Expected: Bearer <token>",
            )

        identity = await fetch_identity(self._settings, token)
        if not identity.valid:
            return BearerValidation(valid=False, error=identity.error)

        return BearerValidation(
            valid=True,
            token=token,
            scopes=identity.scopes,
            subject=identity.subject,
        )

    async def handle_authenticated_request(
        self,
        headers: Mapping[str, str],
        resource: str | None = None,
        action: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResponse:
        """Authenticate a request and, in enterprise mode, admit it.

        Args:
            headers: Request headers.
            resource: Resource being accessed, for policies and audit.
            action: Action being performed, for policies and audit.
            ip_address: Caller address, for audit.
            user_agent: Caller User-Agent, for audit.

        Returns:
            200 when admitted, otherwise a 401, 403 or 429 response.
        """
        authorization = _get_header(headers, "authorization")

        if not authorization:
            self._log_event(
                "gateway_authentication",
                AuditOutcome.FAILURE,
                resource=resource,
                details={"error": "missing_token"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return self.create_challenge(
                REALM,
                CHALLENGE_SCOPE,
                "missing_token",
                "Authorization header with Bearer token is required",
            )

        validation = await self.validate_bearer_token(authorization)
        if not validation.valid:
            self._log_event(
                "gateway_authentication",
                AuditOutcome.FAILURE,
                resource=resource,
                details={"error": "invalid_token", "reason": validation.error},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return self.create_challenge(
                REALM,
                CHALLENGE_SCOPE,
                "invalid_token",
                validation.error or "Token validation failed",
            )

        self._log_event(
            "gateway_authentication",
            AuditOutcome.SUCCESS,
            subject_id=validation.subject,
            resource=resource,
            details={"scopes": validation.scopes},
            ip_address=ip_address,
            user_agent=user_agent,
        )

        if self._settings.is_enterprise_mode:
            decision = await self.admit(
                validation.subject or "unknown",
                organization_id=self._settings.github_organization,
                resource=resource,
                action=action,
            )
            if not decision.allowed:
                return self._rejection(decision)

        return AuthResponse(
            status=200,
            headers={"Content-Type": "application/json"},
            body={
                "authenticated": True,
                "subject": validation.subject,
                "scopes": validation.scopes,
            },
            validation=validation,
        )

    async def admit(
        self,
        subject: str,
        organization_id: str | None = None,
        resource: str | None = None,
        action: str | None = None,
    ) -> AdmissionDecision:
        """Pass an authenticated subject through the rate limiter and policies."""
        rate_limit = None
        if self._rate_limiter is not None:
            rate_limit = await self._rate_limiter.check_limit(subject, ActionClass.API)
            if not rate_limit.allowed:
                self._log_event(
                    "gateway_rate_limited",
                    AuditOutcome.FAILURE,
                    subject_id=subject,
                    organization_id=organization_id,
                    resource=resource,
                    details={"limit": rate_limit.limit},
                )
                return AdmissionDecision(
                    allowed=False,
                    status_code=429,
                    reason="Rate limit exceeded",
                    rate_limit=rate_limit,
                )

        if self._policy_engine is not None:
            evaluation = await self._policy_engine.evaluate(
                PolicyEvaluationContext(
                    user_id=subject,
                    organization_id=organization_id,
                    resource=resource,
                    action=action,
                )
            )
            # Rate limit policy actions are recorded here, not enforced
            for entry in evaluation.audit_events:
                self._log_event(
                    entry.action,
                    AuditOutcome.SUCCESS,
                    source=AuditSource.POLICY,
                    subject_id=subject,
                    organization_id=organization_id,
                    resource=resource,
                    details=entry.details,
                )
            if not evaluation.allowed:
                self._log_event(
                    "gateway_access_denied",
                    AuditOutcome.FAILURE,
                    subject_id=subject,
                    organization_id=organization_id,
                    resource=resource,
                    details={
                        "policies": [
                            match.policy_id for match in evaluation.policies if match.matched
                        ]
                    },
                )
                return AdmissionDecision(
                    allowed=False,
                    status_code=403,
                    reason="Access denied by policy",
                    requirements=evaluation.requirements,
                    rate_limit=rate_limit,
                )
            requirements = evaluation.requirements
        else:
            requirements = []

        return AdmissionDecision(
            allowed=True,
            requirements=requirements,
            rate_limit=rate_limit,
        )

    def get_authorization_url(
        self,
        client_id: str | None = None,
        redirect_uri: str | None = None,
        scopes: list[str] | None = None,
        state: str | None = None,
    ) -> AuthorizationFlow:
        """Start an OAuth flow with optional client overrides.

        Raises:
            ConfigurationError: OAuth is not configured.
        """
        oauth = self._require_oauth()
        grant = oauth.generate_pkce()
        flow_state = state or oauth.generate_state()
        url = oauth.build_authorization_url(
            flow_state,
            grant.code_challenge,
            {
                "client_id": client_id or oauth.client_id,
                "redirect_uri": redirect_uri or oauth.redirect_uri,
                "scope": " ".join(scopes or oauth.scopes or ["repo", "read:user"]),
            },
        )
        return AuthorizationFlow(
            authorization_url=url,
            state=flow_state,
            code_verifier=grant.code_verifier,
        )

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        state: str | None = None,
        redirect_uri: str | None = None,
    ) -> AccessToken:
        """Exchange an authorization code through the OAuth issuer.

        ``redirect_uri`` must be the one sent with the authorization request.
        """
        return await self._require_oauth().exchange_code(
            code, code_verifier, state, redirect_uri=redirect_uri
        )

    def remember_flow(
        self, flow: AuthorizationFlow, redirect_uri: str | None = None
    ) -> None:
        """Keep a started flow's verifier until its callback arrives."""
        now = self._clock()
        self.prune_flows(now)
        self._pending_flows[flow.state] = {
            "code_verifier": flow.code_verifier,
            "redirect_uri": redirect_uri,
            "created_at": now,
        }

    def take_flow(self, state: str | None) -> dict[str, Any] | None:
        """Remove and return the pending flow for a state.

        Returns None for unknown, expired or already consumed states.
        """
        self.prune_flows()
        if not state:
            return None
        return self._pending_flows.pop(state, None)

    def prune_flows(self, now: float | None = None) -> int:
        """Drop flows older than PENDING_FLOW_TTL_SECONDS.

        Returns:
            Number of flows removed.
        """
        now = self._clock() if now is None else now
        expired = [
            state
            for state, flow in self._pending_flows.items()
            if now - flow["created_at"] > PENDING_FLOW_TTL_SECONDS
        ]
        for state in expired:
            del self._pending_flows[state]
        return len(expired)

    @property
    def pending_flow_count(self) -> int:
        return len(self._pending_flows)

    async def get_installation_token(
        self, installation_id: int | None = None
    ) -> InstallationCredential:
        """Get an installation token through the installation issuer."""
        if self._app is None:
            raise ConfigurationError("GitHub App not configured")
        return await self._app.get_installation_token(installation_id)

    def _require_oauth(self) -> OAuthIssuer:
        if self._oauth is None:
            raise ConfigurationError("OAuth not configured")
        return self._oauth

    def _rejection(self, decision: AdmissionDecision) -> AuthResponse:
        headers = {"Content-Type": "application/json"}
        if decision.status_code == 429:
            retry_after = 60
            if decision.rate_limit and decision.rate_limit.reset_time and self._rate_limiter:
                retry_after = self._rate_limiter.build_exceeded_response(
                    ActionClass.API, decision.rate_limit
                ).retry_after
            headers["Retry-After"] = str(retry_after)
            return AuthResponse(
                status=429,
                headers=headers,
                body={
                    "error": "rate_limit_exceeded",
                    "error_description": decision.reason,
                    "retry_after": retry_after,
                },
            )
        return AuthResponse(
            status=decision.status_code,
            headers=headers,
            body={
                "error": "access_denied",
                "error_description": decision.reason,
                "requirements": decision.requirements,
            },
        )

    def _log_event(
        self,
        action: str,
        outcome: AuditOutcome,
        source: AuditSource = AuditSource.GATEWAY,
        **fields,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_event(action, outcome, source, **fields)


def _get_header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None
