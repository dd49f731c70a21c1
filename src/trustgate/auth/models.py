"""Pydantic models for credential issuance."""

import re
from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

_SCOPE_SEPARATOR = re.compile(r"[,\s]+")


def split_scopes(scope: str | None) -> list[str]:
    """Split a comma and/or whitespace separated scope string."""
    if not scope:
        return []
    return [s for s in _SCOPE_SEPARATOR.split(scope.strip()) if s]


class AuthorizationGrant(BaseModel):
    """PKCE parameters for a single authorization flow."""

    code_verifier: str = Field(..., description="High-entropy code verifier")
    code_challenge: str = Field(..., description="base64url(sha256(code_verifier))")
    code_challenge_method: Literal["S256"] = Field(default="S256")
    state: str = Field(default="", description="Anti-CSRF state")


class AuthorizationFlow(BaseModel):
    """A started authorization flow. The caller keeps the verifier."""

    authorization_url: str = Field(..., description="URL to redirect the user to")
    state: str = Field(..., description="State the callback must echo")
    code_verifier: str = Field(..., description="Verifier for the code exchange")


class AccessToken(BaseModel):
    """Delegated user credential returned by the token endpoint."""

    access_token: str = Field(..., description="The access token")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(default=3600, description="Lifetime in seconds")
    scope: str = Field(default="", description="Granted scopes as returned")
    expires_at: datetime | None = Field(default=None, description="Expiry (UTC)")

    @model_validator(mode="after")
    def _compute_expiry(self) -> "AccessToken":
        if self.expires_at is None:
            self.expires_at = datetime.now(UTC) + timedelta(seconds=self.expires_in)
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def scopes(self) -> list[str]:
        return split_scopes(self.scope)


class TokenValidation(BaseModel):
    """Result of checking a token against the identity endpoint."""

    valid: bool
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    subject: str | None = Field(default=None, description="Login of the token owner")
    error: str | None = None


class JWTAssertion(BaseModel):
    """Signed application assertion. Minted per call, never cached."""

    token: str = Field(..., description="Compact RS256 JWT")
    issuer: str = Field(..., description="Application ID (iss claim)")
    issued_at: datetime = Field(..., description="iat claim")
    expires_at: datetime = Field(..., description="exp claim")
    jti: str = Field(..., description="Unique assertion ID")


class AccountRef(BaseModel):
    """Owner of an installation, repository or app."""

    model_config = ConfigDict(extra="ignore")

    login: str
    id: int
    type: str | None = None


class Repository(BaseModel):
    """Repository accessible to an installation."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    full_name: str | None = None
    owner: AccountRef
    private: bool = False


class InstallationCredential(BaseModel):
    """Installation access token owned by the installation token cache."""

    installation_id: int
    token: str
    expires_at: datetime
    permissions: dict[str, str] = Field(default_factory=dict)
    repository_selection: Literal["all", "selected"] = "all"
    repositories: list[Repository] | None = Field(
        default=None, description="None when the server omitted the list"
    )

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """Whether the token expires within the given number of seconds."""
        now = now or datetime.now(UTC)
        return (self.expires_at - now).total_seconds() < seconds


class Installation(BaseModel):
    """An installation of the application on an account."""

    model_config = ConfigDict(extra="ignore")

    id: int
    account: AccountRef
    repository_selection: Literal["all", "selected"] = "all"
    permissions: dict[str, str] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    suspended_at: datetime | None = None


class AppInfo(BaseModel):
    """The authenticated application."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    owner: AccountRef
    description: str | None = None
    permissions: dict[str, str] = Field(default_factory=dict)


class InstallationUser(BaseModel):
    """Identity behind an installation token."""

    model_config = ConfigDict(extra="ignore")

    login: str
    id: int
    type: str | None = None
    name: str | None = None
    email: str | None = None


class OAuthError(BaseModel):
    """OAuth 2.0 error response."""

    error: str = Field(..., description="Error code")
    error_description: str | None = Field(default=None, description="Error description")
    error_uri: str | None = Field(default=None, description="Error URI")
