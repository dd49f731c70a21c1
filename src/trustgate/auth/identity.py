"""Token validation against the resource server identity endpoint."""

import logging
from datetime import UTC, datetime

import httpx

from trustgate.auth.models import TokenValidation, split_scopes
from trustgate.config import Settings

logger = logging.getLogger(__name__)

SCOPES_HEADER = "X-OAuth-Scopes"
TOKEN_EXPIRATION_HEADER = "GitHub-Authentication-Token-Expiration"


def parse_token_expiration(value: str | None) -> datetime | None:
    """Parse the token expiration header, e.g. "2026-01-01 00:00:00 UTC"."""
    if not value:
        return None
    text = value.strip().removesuffix("UTC").strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable token expiration header: %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


async def fetch_identity(settings: Settings, token: str) -> TokenValidation:
    """Validate a bearer token by calling GET /user.

    Never raises; failures are reported in the result.

    Args:
        settings: Application settings.
        token: Access token to validate.

    Returns:
        Validation result with scopes and the token owner's login.
    """
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{settings.github_api_base_url}/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/vnd.github+json",
                    "User-Agent": settings.user_agent,
                },
                timeout=settings.request_timeout,
            )

        if not response.is_success:
            return TokenValidation(
                valid=False,
                error=(
                    f"Token validation failed: {response.status_code} "
                    f"{response.reason_phrase}"
                ),
            )

        data = response.json()
        return TokenValidation(
            valid=True,
            scopes=split_scopes(response.headers.get(SCOPES_HEADER)),
            expires_at=parse_token_expiration(
                response.headers.get(TOKEN_EXPIRATION_HEADER)
            ),
            subject=data.get("login") if isinstance(data, dict) else None,
        )
    except Exception as e:
        logger.warning("Token validation error: %s", e)
        return TokenValidation(valid=False, error=str(e))
