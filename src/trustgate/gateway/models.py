"""Pydantic models for the bearer challenge and resource discovery."""

from typing import Any

from pydantic import BaseModel, Field

from trustgate.ratelimit import RateLimitResult

# Scopes the resource server understands
GITHUB_SCOPES = [
    "repo",
    "repo:status",
    "repo_deployment",
    "public_repo",
    "repo:invite",
    "security_events",
    "read:user",
    "user:email",
    "user:follow",
    "read:org",
    "write:org",
    "admin:org",
    "read:public_key",
    "write:public_key",
    "admin:public_key",
    "read:repo_hook",
    "write:repo_hook",
    "admin:repo_hook",
    "read:org_hook",
    "write:org_hook",
    "admin:org_hook",
    "gist",
    "notifications",
    "read:discussion",
    "write:discussion",
]


class AuthorizationServerInfo(BaseModel):
    """Authorization server entry (RFC 8414 shaped)."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    scopes_supported: list[str] = Field(default_factory=list)
    response_types_supported: list[str] = Field(default_factory=lambda: ["code"])
    grant_types_supported: list[str] = Field(default_factory=list)
    code_challenge_methods_supported: list[str] = Field(default_factory=lambda: ["S256"])
    token_endpoint_auth_methods_supported: list[str] = Field(default_factory=list)
    revocation_endpoint: str | None = None
    introspection_endpoint: str | None = None
    registration_endpoint: str | None = None


class ResourceServerInfo(BaseModel):
    """Description of the protected resource server."""

    resource_server_id: str
    resource_server_name: str
    resource_server_icon: str | None = None
    resource_server_description: str | None = None


class ClientRegistrationInfo(BaseModel):
    """Dynamic client registration support."""

    supported: bool = False
    registration_endpoint: str | None = None


class ProtectedResourceMetadata(BaseModel):
    """Protected resource metadata document (RFC 9728 shaped)."""

    authorization_servers: list[AuthorizationServerInfo] = Field(default_factory=list)
    resource_server: ResourceServerInfo
    scopes_supported: list[str] = Field(default_factory=list)
    client_registration: ClientRegistrationInfo = Field(
        default_factory=ClientRegistrationInfo
    )


class BearerValidation(BaseModel):
    """Result of validating an Authorization header."""

    valid: bool
    token: str | None = None
    scopes: list[str] = Field(default_factory=list)
    subject: str | None = Field(default=None, description="Login of the token owner")
    error: str | None = None


class AdmissionDecision(BaseModel):
    """Enterprise admission outcome for an authenticated subject."""

    allowed: bool
    status_code: int = Field(200, description="200, 403 or 429")
    reason: str | None = None
    requirements: list[str] = Field(default_factory=list)
    rate_limit: RateLimitResult | None = None


class AuthResponse(BaseModel):
    """HTTP-shaped gateway response."""

    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None
    validation: BearerValidation | None = Field(
        default=None,
        exclude=True,
        description="Validated credentials when the request was admitted",
    )

    @property
    def admitted(self) -> bool:
        return self.status == 200
