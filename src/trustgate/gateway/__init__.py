"""Authorization gateway module.

Implements the bearer challenge (RFC 6750) and protected resource
metadata (RFC 9728) half of the HTTP authorization handshake.
"""

from trustgate.gateway.middleware import BearerAuthMiddleware
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
from trustgate.gateway.protocol import AuthorizationGateway, format_www_authenticate

__all__ = [
    # Gateway
    "AuthorizationGateway",
    "format_www_authenticate",
    # Middleware
    "BearerAuthMiddleware",
    # Models
    "GITHUB_SCOPES",
    "AdmissionDecision",
    "AuthorizationServerInfo",
    "AuthResponse",
    "BearerValidation",
    "ClientRegistrationInfo",
    "ProtectedResourceMetadata",
    "ResourceServerInfo",
]
