"""GitHub App authentication and installation token management."""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import jwt
from pydantic import ValidationError

from trustgate.audit import AuditLogger, AuditOutcome, AuditSource
from trustgate.auth.models import (
    AppInfo,
    Installation,
    InstallationCredential,
    InstallationUser,
    JWTAssertion,
    Repository,
)
from trustgate.config import Settings, get_settings
from trustgate.errors import ConfigurationError, UpstreamError
from trustgate.telemetry import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class InstallationIssuer:
    """Issues installation access tokens for a GitHub App.

    Every call to the App endpoints is authenticated with a freshly minted
    RS256 assertion. Installation tokens are cached per installation and
    never served within TOKEN_EXPIRY_SKEW_SECONDS of their expiry.

    Concurrent requests on a cold cache may each fetch a token; the last
    one stored wins and every returned token is valid.
    """

    ASSERTION_BACKDATE_SECONDS = 60
    ASSERTION_LIFETIME_SECONDS = 10 * 60
    TOKEN_EXPIRY_SKEW_SECONDS = 60

    def __init__(
        self,
        settings: Settings | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize installation issuer.

        Args:
            settings: Application settings.
            audit: Audit sink for token lifecycle events.
            clock: Source of the current epoch time in seconds.

        Raises:
            ConfigurationError: App auth is disabled or the app ID / key is missing.
        """
        self._settings = settings or get_settings()
        self._audit = audit
        self._clock = clock
        self._token_cache: dict[int, InstallationCredential] = {}
        self._installation_cache: dict[int, Installation] = {}
        self._eviction_handles: dict[int, asyncio.TimerHandle] = {}

        if not self._settings.github_app_enabled:
            raise ConfigurationError("GitHub App not configured or disabled")
        if not (self._settings.github_app_id and self._settings.github_app_private_key):
            raise ConfigurationError("GitHub App ID and private key are required")

    @property
    def app_id(self) -> str:
        return self._settings.github_app_id

    @property
    def base_url(self) -> str:
        return self._settings.github_api_base_url

    @property
    def default_installation_id(self) -> int | None:
        return self._settings.github_app_installation_id

    def mint_assertion(self) -> JWTAssertion:
        """Sign a new application assertion.

        Raises:
            ConfigurationError: The private key cannot sign RS256.
        """
        now = int(self._clock())
        jti = uuid.uuid4().hex
        payload = {
            "iat": now - self.ASSERTION_BACKDATE_SECONDS,
            "exp": now + self.ASSERTION_LIFETIME_SECONDS,
            "iss": self.app_id,
            "jti": jti,
        }

        try:
            token = jwt.encode(
                payload,
                self._settings.github_app_private_key,
                algorithm="RS256",
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise ConfigurationError(f"Cannot sign GitHub App assertion: {e}") from e

        return JWTAssertion(
            token=token,
            issuer=self.app_id,
            issued_at=datetime.fromtimestamp(payload["iat"], UTC),
            expires_at=datetime.fromtimestamp(payload["exp"], UTC),
            jti=jti,
        )

    async def get_installation_token(
        self, installation_id: int | None = None
    ) -> InstallationCredential:
        """Get an installation token, from cache when still fresh.

        Args:
            installation_id: Installation; defaults to the configured one.

        Returns:
            Installation credential.

        Raises:
            ConfigurationError: No installation ID is available.
            UpstreamError: The token request failed.
        """
        target = installation_id or self.default_installation_id
        if not target:
            raise ConfigurationError("Installation ID required")

        cached = self._token_cache.get(target)
        if cached and not cached.expires_within(
            self.TOKEN_EXPIRY_SKEW_SECONDS, now=self._now()
        ):
            return cached

        with tracer.start_as_current_span("github_app.installation_token") as span:
            span.set_attribute("github.installation_id", target)
            try:
                assertion = self.mint_assertion()
                data = await self._call(
                    f"/app/installations/{target}/access_tokens",
                    f"Bearer {assertion.token}",
                    "Failed to get installation token",
                    post=True,
                )
                credential = self._parse_credential(target, data)
            except (ConfigurationError, UpstreamError) as e:
                self._log_event(
                    "installation_token_retrieval",
                    AuditOutcome.FAILURE,
                    {"installation_id": target, "error": str(e)},
                )
                raise

        self._store_token(credential)

        self._log_event(
            "installation_token_retrieved",
            AuditOutcome.SUCCESS,
            {
                "installation_id": target,
                "expires_at": credential.expires_at.isoformat(),
                "permissions": sorted(credential.permissions),
            },
        )
        return credential

    async def list_installations(self) -> list[Installation]:
        """List all installations of the app and cache them."""
        try:
            assertion = self.mint_assertion()
            data = await self._call(
                "/app/installations",
                f"Bearer {assertion.token}",
                "Failed to list installations",
            )
            installations = [Installation.model_validate(item) for item in data]
        except ValidationError as e:
            error = UpstreamError(f"Failed to list installations: malformed response: {e}")
            self._log_event("list_installations", AuditOutcome.FAILURE, {"error": str(error)})
            raise error from e
        except (ConfigurationError, UpstreamError) as e:
            self._log_event("list_installations", AuditOutcome.FAILURE, {"error": str(e)})
            raise

        for installation in installations:
            self._installation_cache[installation.id] = installation
        return installations

    async def get_installation(self, installation_id: int) -> Installation:
        """Get an installation, from cache when known."""
        cached = self._installation_cache.get(installation_id)
        if cached:
            return cached

        try:
            assertion = self.mint_assertion()
            data = await self._call(
                f"/app/installations/{installation_id}",
                f"Bearer {assertion.token}",
                "Failed to get installation",
            )
            installation = Installation.model_validate(data)
        except ValidationError as e:
            error = UpstreamError(f"Failed to get installation: malformed response: {e}")
            self._log_event(
                "get_installation",
                AuditOutcome.FAILURE,
                {"installation_id": installation_id, "error": str(error)},
            )
            raise error from e
        except (ConfigurationError, UpstreamError) as e:
            self._log_event(
                "get_installation",
                AuditOutcome.FAILURE,
                {"installation_id": installation_id, "error": str(e)},
            )
            raise

        self._installation_cache[installation_id] = installation
        return installation

    async def validate_permissions(
        self, installation_id: int, required_permissions: list[str]
    ) -> bool:
        """Whether the installation holds every required permission.

        Absent or "none" permissions and any error all yield False.
        """
        try:
            credential = await self.get_installation_token(installation_id)
        except (ConfigurationError, UpstreamError) as e:
            self._log_event(
                "permission_validation",
                AuditOutcome.FAILURE,
                {
                    "installation_id": installation_id,
                    "required_permissions": required_permissions,
                    "error": str(e),
                },
            )
            return False

        for permission in required_permissions:
            level = credential.permissions.get(permission)
            if not level or level == "none":
                return False
        return True

    async def validate_repository_access(
        self, installation_id: int, owner: str, repo: str
    ) -> bool:
        """Whether the installation can access owner/repo."""
        try:
            credential = await self.get_installation_token(installation_id)
            if credential.repository_selection == "all":
                return True

            repositories = credential.repositories
            if repositories is None:
                data = await self._call(
                    "/installation/repositories",
                    f"token {credential.token}",
                    "Failed to list installation repositories",
                )
                repositories = [
                    Repository.model_validate(item)
                    for item in data.get("repositories", [])
                ]
        except (ConfigurationError, UpstreamError, ValidationError, AttributeError) as e:
            self._log_event(
                "repository_access_validation",
                AuditOutcome.FAILURE,
                {
                    "installation_id": installation_id,
                    "owner": owner,
                    "repo": repo,
                    "error": str(e),
                },
            )
            return False

        return any(r.owner.login == owner and r.name == repo for r in repositories)

    async def get_installation_user(self, installation_id: int) -> InstallationUser:
        """Get the identity behind an installation token."""
        credential = await self.get_installation_token(installation_id)
        data = await self._call(
            "/user",
            f"token {credential.token}",
            "Failed to get installation user",
        )
        return InstallationUser.model_validate(data)

    async def get_app_info(self) -> AppInfo:
        """Get the authenticated app."""
        try:
            assertion = self.mint_assertion()
            data = await self._call(
                "/app", f"Bearer {assertion.token}", "Failed to get app info"
            )
            return AppInfo.model_validate(data)
        except (ConfigurationError, UpstreamError) as e:
            self._log_event("get_app_info", AuditOutcome.FAILURE, {"error": str(e)})
            raise

    def clear_token_cache(self) -> None:
        """Drop every cached installation token."""
        self._cancel_evictions()
        self._token_cache.clear()

    def clear_installation_cache(self) -> None:
        self._installation_cache.clear()

    def get_config(self) -> dict[str, Any]:
        """Get the app configuration without the private key."""
        return {
            "app_id": self.app_id,
            "installation_id": self.default_installation_id,
            "base_url": self.base_url,
        }

    async def shutdown(self) -> None:
        """Cancel every pending eviction timer."""
        self._cancel_evictions()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    def _parse_credential(
        self, installation_id: int, data: dict[str, Any]
    ) -> InstallationCredential:
        try:
            return InstallationCredential(
                installation_id=installation_id,
                token=data["token"],
                expires_at=data["expires_at"],
                permissions=data.get("permissions") or {},
                repository_selection=data.get("repository_selection") or "all",
                repositories=data.get("repositories"),
            )
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise UpstreamError(
                f"Failed to get installation token: malformed response: {e}"
            ) from e

    def _store_token(self, credential: InstallationCredential) -> None:
        installation_id = credential.installation_id
        self._token_cache[installation_id] = credential

        previous = self._eviction_handles.pop(installation_id, None)
        if previous:
            previous.cancel()

        delay = (credential.expires_at - self._now()).total_seconds()
        delay -= self.TOKEN_EXPIRY_SKEW_SECONDS
        loop = asyncio.get_running_loop()
        self._eviction_handles[installation_id] = loop.call_later(
            max(delay, 0), self._evict, installation_id, credential
        )

    def _evict(self, installation_id: int, credential: InstallationCredential) -> None:
        # A newer token may have replaced the one this timer was set for
        if self._token_cache.get(installation_id) is credential:
            del self._token_cache[installation_id]
            self._eviction_handles.pop(installation_id, None)
            logger.debug("Evicted installation token for %s", installation_id)

    def _cancel_evictions(self) -> None:
        for handle in self._eviction_handles.values():
            handle.cancel()
        self._eviction_handles.clear()

    async def _call(
        self,
        path: str,
        authorization: str,
        failure: str,
        post: bool = False,
    ) -> Any:
        """Call the GitHub API and return the decoded JSON body.

        Raises:
            UpstreamError: Transport failure, non-2xx status or invalid JSON.
        """
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": authorization,
            "Accept": "application/vnd.github+json",
            "User-Agent": f"{self._settings.user_agent} (GitHub App)",
        }

        try:
            async with httpx.AsyncClient() as client:
                if post:
                    response = await client.post(
                        url, headers=headers, timeout=self._settings.request_timeout
                    )
                else:
                    response = await client.get(
                        url, headers=headers, timeout=self._settings.request_timeout
                    )
        except httpx.HTTPError as e:
            logger.error("HTTP error calling %s: %s", url, e)
            raise UpstreamError(f"{failure}: {e}") from e

        if not response.is_success:
            logger.error("%s: %s", failure, response.status_code)
            raise UpstreamError.from_response(failure, response)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{failure}: invalid JSON response",
                status_code=response.status_code,
                body=response.text[:500],
            ) from e

    def _log_event(
        self,
        action: str,
        outcome: AuditOutcome,
        details: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_event(
            f"github_app_{action}",
            outcome,
            AuditSource.AUTH,
            details={**details, "app_id": self.app_id},
        )
