"""Application settings and configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_API_REQUESTS_PER_HOUR = 1000
DEFAULT_AUTH_ATTEMPTS_PER_HOUR = 10
DEFAULT_TOKEN_REQUESTS_PER_HOUR = 50


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    version: str = Field(
        default="0.1.0",
        description="Version reported in the User-Agent of upstream calls",
    )

    # GitHub host (GitHub Enterprise Server)
    github_host: str | None = Field(
        default=None,
        description="GitHub Enterprise Server host; github.com when unset",
    )

    # OAuth Configuration
    github_oauth_enabled: bool = Field(
        default=True,
        description="Enable the OAuth credential issuer when credentials are set",
    )
    github_oauth_client_id: str = Field(
        default="",
        description="OAuth client ID",
    )
    github_oauth_client_secret: str = Field(
        default="",
        description="OAuth client secret",
    )
    github_oauth_redirect_uri: str = Field(
        default="http://localhost:3000/auth/callback",
        description="OAuth redirect URI",
    )
    github_oauth_scopes: str = Field(
        default="repo,read:user",
        description="Comma-separated OAuth scopes requested by start_flow",
    )
    github_oauth_auth_url: str | None = Field(
        default=None,
        description="Override for the authorization endpoint",
    )
    github_oauth_token_url: str | None = Field(
        default=None,
        description="Override for the token endpoint",
    )

    # GitHub App Configuration
    github_app_enabled: bool = Field(
        default=True,
        description="Enable the installation credential issuer when credentials are set",
    )
    github_app_id: str = Field(
        default="",
        description="GitHub App ID (JWT issuer)",
    )
    github_app_private_key: str = Field(
        default="",
        description="PEM encoded GitHub App private key",
    )
    github_app_installation_id: int | None = Field(
        default=None,
        description="Default installation ID for installation tokens",
    )

    # Audit Logging
    audit_all_access: bool = Field(
        default=False,
        description="Persist audit events to append-only JSONL files",
    )
    audit_log_dir: str = Field(
        default="./logs/audit",
        description="Directory for audit log files",
    )

    # Enterprise Configuration
    enterprise_mode: bool | None = Field(
        default=None,
        description="Force enterprise mode on or off; derived from other settings when unset",
    )
    github_organization: str | None = Field(
        default=None,
        description="Organization the deployment is bound to",
    )
    github_sso_enforcement: bool = Field(
        default=False,
        description="Enforce organization SSO",
    )
    require_mfa: bool = Field(
        default=False,
        description="Register the MFA requirement policy",
    )
    restrict_to_members: bool = Field(
        default=False,
        description="Register the member-only repository access policy",
    )
    github_admin_users: str = Field(
        default="",
        description="Comma-separated list of administrative users",
    )

    # Rate Limiting (in-memory, per process)
    rate_limit_api_hour: int | None = Field(
        default=None,
        description="API requests per subject per hour",
    )
    rate_limit_auth_hour: int | None = Field(
        default=None,
        description="Authentication attempts per subject per hour",
    )
    rate_limit_token_hour: int | None = Field(
        default=None,
        description="Token requests per subject per hour",
    )

    # HTTP surface
    public_base_url: str | None = Field(
        default=None,
        description="Public URL of this service, used for the resource metadata URL",
    )
    protected_path_prefixes: str = Field(
        default="/mcp,/auth/session",
        description="Comma-separated path prefixes that require a bearer token",
    )
    request_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for upstream HTTP calls",
    )
    server_host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    server_port: int = Field(
        default=8000,
        description="Server port",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log format",
    )

    # Development Settings
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    # OpenTelemetry Configuration
    otel_enabled: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing",
    )
    otel_service_name: str = Field(
        default="trustgate",
        description="Service name for OpenTelemetry traces",
    )
    otel_exporter_otlp_endpoint: str = Field(
        default="http://localhost:4317",
        description="OTLP exporter endpoint (gRPC)",
    )
    otel_exporter_otlp_http_endpoint: str = Field(
        default="http://localhost:4318",
        description="OTLP exporter endpoint (HTTP)",
    )
    otel_exporter_type: Literal["otlp", "otlp-http", "console"] = Field(
        default="otlp",
        description="Telemetry exporter type",
    )
    otel_traces_sampler_ratio: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Fraction of root traces sampled",
    )

    @field_validator("github_app_private_key")
    @classmethod
    def _unescape_private_key(cls, value: str) -> str:
        # Keys passed through env files usually carry literal "\n"
        return value.replace("\\n", "\n")

    @field_validator("rate_limit_api_hour", "rate_limit_auth_hour", "rate_limit_token_hour")
    @classmethod
    def _clamp_rate_limit(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return max(1, value)

    @property
    def github_web_url(self) -> str:
        """Base URL of the GitHub web host."""
        if not self.github_host:
            return "https://github.com"
        host = self.github_host.rstrip("/")
        if not host.startswith(("https://", "http://")):
            host = f"https://{host}"
        return host

    @property
    def github_api_base_url(self) -> str:
        """Base URL of the GitHub REST API."""
        if not self.github_host:
            return "https://api.github.com"
        return f"{self.github_web_url}/api/v3"

    @property
    def oauth_scopes(self) -> list[str]:
        """Configured OAuth scopes as a list."""
        return _split_list(self.github_oauth_scopes)

    @property
    def oauth_configured(self) -> bool:
        """Whether the OAuth issuer should be constructed."""
        return bool(
            self.github_oauth_enabled
            and self.github_oauth_client_id
            and self.github_oauth_client_secret
        )

    @property
    def app_configured(self) -> bool:
        """Whether the installation issuer should be constructed."""
        return bool(
            self.github_app_enabled and self.github_app_id and self.github_app_private_key
        )

    @property
    def admin_users(self) -> list[str]:
        """Configured administrative users."""
        return _split_list(self.github_admin_users)

    @property
    def protected_prefixes(self) -> tuple[str, ...]:
        """Path prefixes guarded by the gateway middleware."""
        return tuple(_split_list(self.protected_path_prefixes))

    @property
    def rate_limiting_configured(self) -> bool:
        """Whether any per-action-class limit was set explicitly."""
        return any(
            limit is not None
            for limit in (
                self.rate_limit_api_hour,
                self.rate_limit_auth_hour,
                self.rate_limit_token_hour,
            )
        )

    @property
    def is_enterprise_mode(self) -> bool:
        """Whether the rate limiter and policy engine guard admission."""
        if self.enterprise_mode is not None:
            return self.enterprise_mode
        return bool(
            self.github_organization
            or self.audit_all_access
            or self.rate_limiting_configured
            or self.github_sso_enforcement
        )

    @property
    def resource_metadata_url(self) -> str:
        """Discovery URL advertised in bearer challenges."""
        base = (self.public_base_url or self.github_web_url).rstrip("/")
        return f"{base}/.well-known/mcp-resource-metadata"

    @property
    def user_agent(self) -> str:
        """User-Agent header for upstream calls."""
        return f"trustgate/{self.version}"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
