"""Credential issuance module.

Two grant models are supported:
- delegated user OAuth 2.1 with PKCE (OAuthIssuer)
- GitHub App installation tokens from signed assertions (InstallationIssuer)
"""

from trustgate.auth.app import InstallationIssuer
from trustgate.auth.identity import fetch_identity, parse_token_expiration
from trustgate.auth.models import (
    AccessToken,
    AccountRef,
    AppInfo,
    AuthorizationFlow,
    AuthorizationGrant,
    Installation,
    InstallationCredential,
    InstallationUser,
    JWTAssertion,
    OAuthError,
    Repository,
    TokenValidation,
    split_scopes,
)
from trustgate.auth.oauth import OAuthIssuer
from trustgate.auth.pkce import (
    constant_time_equals,
    derive_code_challenge,
    generate_random_string,
    verify_code_challenge,
)

__all__ = [
    # Issuers
    "InstallationIssuer",
    "OAuthIssuer",
    # Identity
    "fetch_identity",
    "parse_token_expiration",
    # Models
    "AccessToken",
    "AccountRef",
    "AppInfo",
    "AuthorizationFlow",
    "AuthorizationGrant",
    "Installation",
    "InstallationCredential",
    "InstallationUser",
    "JWTAssertion",
    "OAuthError",
    "Repository",
    "TokenValidation",
    "split_scopes",
    # PKCE
    "constant_time_equals",
    "derive_code_challenge",
    "generate_random_string",
    "verify_code_challenge",
]
