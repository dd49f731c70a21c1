"""FastAPI routers for discovery, the OAuth flow and the session echo."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from trustgate.auth import AccessToken, OAuthError, OAuthIssuer, split_scopes
from trustgate.errors import ConfigurationError, UpstreamError
from trustgate.ratelimit import ActionClass
from trustgate.services import AccessServices

logger = logging.getLogger(__name__)

discovery_router = APIRouter(prefix="/.well-known", tags=["Discovery"])
oauth_router = APIRouter(prefix="/oauth", tags=["OAuth 2.1"])
session_router = APIRouter(prefix="/auth", tags=["Session"])

def get_services(request: Request) -> AccessServices:
    """Get the service container built by the application lifespan."""
    return request.app.state.services


def get_oauth_issuer(
    services: Annotated[AccessServices, Depends(get_services)],
) -> OAuthIssuer:
    """Get the OAuth issuer, or 503 when it is not configured."""
    if services.oauth is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=OAuthError(
                error="temporarily_unavailable",
                error_description="OAuth not configured",
            ).model_dump(exclude_none=True),
        )
    return services.oauth


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_limit(
    services: AccessServices, request: Request, action_class: ActionClass
) -> None:
    result = await services.rate_limiter.check_limit(_client_key(request), action_class)
    if not result.allowed:
        exceeded = services.rate_limiter.build_exceeded_response(action_class, result)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=exceeded.model_dump(mode="json"),
            headers={"Retry-After": str(exceeded.retry_after)},
        )


def _upstream_failure(e: UpstreamError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=OAuthError(error="server_error", error_description=str(e)).model_dump(
            exclude_none=True
        ),
    )


@discovery_router.get("/mcp-resource-metadata")
@discovery_router.get("/oauth-protected-resource")
async def protected_resource_metadata(
    services: Annotated[AccessServices, Depends(get_services)],
) -> JSONResponse:
    """Serve the protected resource metadata document."""
    metadata = services.gateway.get_protected_resource_metadata()
    return JSONResponse(content=metadata.model_dump(exclude_none=True))


@discovery_router.get("/oauth-authorization-server")
async def authorization_server_metadata(
    services: Annotated[AccessServices, Depends(get_services)],
) -> JSONResponse:
    """Serve the OAuth authorization server metadata, 404 when disabled."""
    metadata = services.gateway.get_authorization_server_metadata()
    if metadata is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="OAuth not configured",
        )
    return JSONResponse(content=metadata.model_dump(exclude_none=True))


@oauth_router.get("/authorize")
async def authorize(
    request: Request,
    services: Annotated[AccessServices, Depends(get_services)],
    redirect_uri: Annotated[str | None, Query()] = None,
    scope: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
) -> RedirectResponse:
    """Start an authorization code flow with PKCE.

    The code verifier stays on the server, keyed by state, until the
    callback arrives.

    Args:
        redirect_uri: Callback override; the configured redirect URI otherwise
        scope: Optional space or comma separated scopes
        state: Optional caller-chosen state

    Returns:
        Redirect response to the GitHub authorization endpoint
    """
    await _enforce_limit(services, request, ActionClass.AUTH)

    try:
        flow = services.gateway.get_authorization_url(
            redirect_uri=redirect_uri,
            scopes=split_scopes(scope) or None,
            state=state,
        )
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from None

    services.gateway.remember_flow(flow, redirect_uri)

    logger.info("Redirecting to authorization endpoint with state: %s...", flow.state[:8])
    return RedirectResponse(url=flow.authorization_url, status_code=status.HTTP_302_FOUND)


@oauth_router.get("/callback")
async def callback(
    request: Request,
    services: Annotated[AccessServices, Depends(get_services)],
    code: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
    error: Annotated[str | None, Query()] = None,
    error_description: Annotated[str | None, Query()] = None,
) -> AccessToken:
    """Handle the authorization callback and exchange the code.

    Raises:
        HTTPException: The authorization failed, the state is unknown or
            the token endpoint rejected the exchange.
    """
    if error:
        logger.warning("Authorization error from GitHub: %s - %s", error, error_description)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=OAuthError(
                error=error,
                error_description=error_description,
            ).model_dump(exclude_none=True),
        )

    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code",
        )

    await _enforce_limit(services, request, ActionClass.AUTH)

    flow = services.gateway.take_flow(state)
    if flow is None:
        logger.warning("Callback with unknown or reused state")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unknown or already used state",
        )

    try:
        token = await services.gateway.exchange_code(
            code, flow["code_verifier"], state, redirect_uri=flow["redirect_uri"]
        )
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from None
    except UpstreamError as e:
        logger.error("Token exchange failed: %s", e)
        raise _upstream_failure(e) from None

    logger.info("OAuth flow completed for state %s...", state[:8])
    return token


@oauth_router.post("/refresh")
async def refresh(
    request: Request,
    services: Annotated[AccessServices, Depends(get_services)],
    oauth: Annotated[OAuthIssuer, Depends(get_oauth_issuer)],
    refresh_token: Annotated[str, Form()],
) -> AccessToken:
    """Refresh an access token."""
    await _enforce_limit(services, request, ActionClass.TOKEN)

    try:
        return await oauth.refresh(refresh_token)
    except UpstreamError as e:
        logger.error("Token refresh failed: %s", e)
        raise _upstream_failure(e) from None


@oauth_router.post("/revoke")
async def revoke(
    oauth: Annotated[OAuthIssuer, Depends(get_oauth_issuer)],
    token: Annotated[str, Form()],
) -> dict[str, bool]:
    """Revoke an access token."""
    try:
        await oauth.revoke(token)
    except UpstreamError as e:
        logger.error("Token revocation failed: %s", e)
        raise _upstream_failure(e) from None
    return {"revoked": True}


@session_router.get("/session")
async def session(request: Request) -> dict[str, Any]:
    """Echo the identity admitted by the gateway middleware."""
    validation = getattr(request.state, "auth", None)
    if validation is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {
        "authenticated": True,
        "subject": validation.subject,
        "scopes": validation.scopes,
    }
