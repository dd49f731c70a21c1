"""Application factory wiring the gateway routers to the access services."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from trustgate.config import Settings, get_settings
from trustgate.gateway import BearerAuthMiddleware
from trustgate.gateway.router import discovery_router, oauth_router, session_router
from trustgate.services import AccessServices, build_services
from trustgate.telemetry import instrument_app

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: AccessServices = app.state.services
    await services.start()
    try:
        yield
    finally:
        try:
            await services.shutdown()
        except Exception:
            logger.exception("Access services did not stop cleanly")


def create_app(
    settings: Settings | None = None,
    services: AccessServices | None = None,
) -> FastAPI:
    """Build the trustgate ASGI app.

    Args:
        settings: Settings to use; the cached process settings by default.
        services: Component container; built from ``settings`` when omitted.
            Tests pass their own to control clocks and upstream clients.

    Returns:
        The app with discovery, OAuth and session routes mounted and the
        bearer middleware guarding the protected prefixes.
    """
    settings = settings or get_settings()
    services = services or build_services(settings)

    app = FastAPI(
        title="trustgate",
        description="Credential issuance and access control for the GitHub API",
        version=settings.version,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.get("/health")
    async def health() -> dict:
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready() -> dict:
        return {
            "status": "ready",
            "oauth": services.oauth is not None,
            "github_app": services.app is not None,
            "enterprise_mode": settings.is_enterprise_mode,
        }

    for router in (discovery_router, oauth_router, session_router):
        app.include_router(router)

    app.add_middleware(BearerAuthMiddleware, settings=settings)
    instrument_app(app)

    return app
