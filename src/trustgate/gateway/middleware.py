"""Bearer authentication middleware for protected paths."""

import logging
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from trustgate.config import Settings, get_settings

logger = logging.getLogger(__name__)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Runs the gateway handshake on requests under the protected prefixes.

    Admitted requests carry the BearerValidation in request.state.auth.
    Everything else gets the gateway's 401, 403 or 429 response.
    """

    def __init__(self, app: Any, settings: Settings | None = None):
        super().__init__(app)
        self._settings = settings or get_settings()
        self._prefixes = self._settings.protected_prefixes

    async def dispatch(
        self,
        request: Request,
        call_next,
    ) -> Response:
        """Process request with authentication check."""
        path = request.url.path

        if not self._is_protected(path):
            return await call_next(request)

        gateway = request.app.state.services.gateway
        result = await gateway.handle_authenticated_request(
            request.headers,
            resource=path,
            action=request.method,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("User-Agent"),
        )

        if not result.admitted:
            logger.debug("Rejected %s %s with %d", request.method, path, result.status)
            return JSONResponse(
                status_code=result.status,
                content=result.body,
                headers={
                    key: value
                    for key, value in result.headers.items()
                    if key.lower() != "content-type"
                },
            )

        request.state.auth = result.validation
        return await call_next(request)

    def _is_protected(self, path: str) -> bool:
        for prefix in self._prefixes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return True
        return False
