"""Service container wiring the access control components together."""

import logging
from dataclasses import dataclass

from trustgate.audit import AuditLogger
from trustgate.auth import InstallationIssuer, OAuthIssuer
from trustgate.config import Settings, get_settings
from trustgate.gateway.protocol import AuthorizationGateway
from trustgate.policy import PolicyEngine
from trustgate.ratelimit import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class AccessServices:
    """Explicitly constructed components shared by request handlers."""

    settings: Settings
    audit: AuditLogger
    rate_limiter: RateLimiter
    policy_engine: PolicyEngine
    gateway: AuthorizationGateway
    oauth: OAuthIssuer | None = None
    app: InstallationIssuer | None = None

    async def start(self) -> None:
        """Start timers. The limiter and policies only run in enterprise mode."""
        await self.audit.start()
        if self.settings.is_enterprise_mode:
            await self.rate_limiter.start()
            self.policy_engine.initialize()
        logger.info(
            "Access services started (enterprise_mode=%s, oauth=%s, github_app=%s)",
            self.settings.is_enterprise_mode,
            self.oauth is not None,
            self.app is not None,
        )

    async def shutdown(self) -> None:
        """Cancel every timer and flush the audit buffer."""
        if self.app is not None:
            await self.app.shutdown()
        await self.rate_limiter.shutdown()
        await self.audit.shutdown()
        logger.info("Access services stopped")


def build_services(settings: Settings | None = None) -> AccessServices:
    """Construct every component from settings.

    Issuers whose credentials are not configured are left out.
    """
    settings = settings or get_settings()
    audit = AuditLogger(settings)

    oauth = None
    if settings.oauth_configured:
        oauth = OAuthIssuer(settings, audit=audit)
    else:
        logger.info("OAuth issuer disabled (no client credentials configured)")

    app = None
    if settings.app_configured:
        app = InstallationIssuer(settings, audit=audit)
    else:
        logger.info("GitHub App issuer disabled (no app credentials configured)")

    rate_limiter = RateLimiter(settings)
    policy_engine = PolicyEngine(settings)
    gateway = AuthorizationGateway(
        settings,
        oauth=oauth,
        app=app,
        rate_limiter=rate_limiter,
        policy_engine=policy_engine,
        audit=audit,
    )

    return AccessServices(
        settings=settings,
        audit=audit,
        rate_limiter=rate_limiter,
        policy_engine=policy_engine,
        gateway=gateway,
        oauth=oauth,
        app=app,
    )
