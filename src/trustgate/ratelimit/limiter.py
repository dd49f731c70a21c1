"""In-memory rate limiter using per-subject sliding windows."""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from trustgate.config import Settings, get_settings
from trustgate.ratelimit.models import (
    HOUR,
    ActionClass,
    ActionUsage,
    RateLimitConfig,
    RateLimitExceeded,
    RateLimitResult,
    RateLimitWindow,
)

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-process rate limiter keyed by subject and action class.

    Each (subject, action class) pair owns a one-hour window. A window
    older than its size is reset lazily the next time it is touched.
    Until initialize() is called every check is allowed.
    """

    CLEANUP_INTERVAL_SECONDS = 30 * 60

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            settings: Application settings.
            clock: Source of the current epoch time in seconds.
        """
        self._settings = settings or get_settings()
        self._clock = clock
        self._config = RateLimitConfig.from_settings(self._settings)
        self._windows: dict[tuple[str, ActionClass], RateLimitWindow] = {}
        self._initialized = False
        self._cleanup_task: asyncio.Task | None = None

    @property
    def initialized(self) -> bool:
        """Whether limits are being enforced."""
        return self._initialized

    def initialize(self) -> None:
        """Start enforcing limits. Safe to call more than once."""
        if self._initialized:
            return
        self._config = RateLimitConfig.from_settings(self._settings)
        self._initialized = True
        logger.info(
            "Rate limiter initialized (api=%d, auth=%d, token=%d per hour)",
            self._config.api_requests_per_hour,
            self._config.auth_attempts_per_hour,
            self._config.token_requests_per_hour,
        )

    async def start(self) -> None:
        """Initialize and launch the periodic cleanup of idle windows."""
        self.initialize()
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(
                self._run_cleanup(),
                name="ratelimit_cleanup",
            )

    async def shutdown(self) -> None:
        """Stop the cleanup task and stop enforcing limits."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self._initialized = False

    async def check_limit(
        self,
        subject_id: str,
        action_class: ActionClass | str,
        increment: bool = True,
        custom_limit: int | None = None,
    ) -> RateLimitResult:
        """Check whether a subject may perform an action.

        Args:
            subject_id: Subject (user or client) identifier.
            action_class: Action class to check.
            increment: Count this action when it is allowed.
            custom_limit: Override for the configured limit.

        Returns:
            Rate limit result.
        """
        if not self._initialized:
            return RateLimitResult(allowed=True)

        action_class = ActionClass(action_class)
        now = self._clock()
        window = self._get_window(subject_id, action_class, now)
        if window.is_expired(now):
            window.reset(now)

        limit = custom_limit if custom_limit is not None else self._config.limit_for(
            action_class
        )
        allowed = window.count < limit
        if increment and allowed:
            window.count += 1

        if not allowed:
            logger.debug(
                "Rate limit exceeded for %s (%s): %d/%d",
                subject_id,
                action_class.value,
                window.count,
                limit,
            )

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - window.count),
            limit=limit,
            reset_time=datetime.fromtimestamp(window.reset_at, UTC),
            window_size=int(window.window_size),
        )

    def record_action(self, subject_id: str, action_class: ActionClass | str) -> None:
        """Count an action unconditionally.

        Args:
            subject_id: Subject identifier.
            action_class: Action class to count.
        """
        if not self._initialized:
            return

        action_class = ActionClass(action_class)
        now = self._clock()
        window = self._get_window(subject_id, action_class, now)
        if window.is_expired(now):
            window.reset(now)
        window.count += 1

    def get_usage(self, subject_id: str) -> dict[str, ActionUsage]:
        """Get current usage for a subject, per action class.

        Read-only: unknown subjects and expired windows report zero.
        """
        now = self._clock()
        usage: dict[str, ActionUsage] = {}
        for action_class in ActionClass:
            if not self._initialized:
                usage[action_class.value] = ActionUsage(
                    current=0,
                    limit=0,
                    reset_time=datetime.fromtimestamp(now, UTC),
                )
                continue
            window = self._windows.get((subject_id, action_class))
            if window is None or window.is_expired(now):
                current, reset_at = 0, now + HOUR
            else:
                current, reset_at = window.count, window.reset_at
            usage[action_class.value] = ActionUsage(
                current=current,
                limit=self._config.limit_for(action_class),
                reset_time=datetime.fromtimestamp(reset_at, UTC),
            )
        return usage

    def reset_subject(self, subject_id: str) -> None:
        """Drop every window for a subject (admin override)."""
        for key in [key for key in self._windows if key[0] == subject_id]:
            del self._windows[key]

    def reset_all(self) -> None:
        """Drop every window."""
        self._windows.clear()

    def get_config(self) -> RateLimitConfig:
        """Get a copy of the current limits."""
        return self._config.model_copy()

    def update_config(self, **limits: int) -> RateLimitConfig:
        """Replace some of the per-hour limits.

        Args:
            **limits: RateLimitConfig field values.

        Returns:
            The updated configuration.
        """
        self._config = RateLimitConfig(**{**self._config.model_dump(), **limits})
        return self.get_config()

    def get_stats(self) -> dict[str, Any]:
        """Get rate limiter statistics.

        Returns:
            Statistics dictionary.
        """
        total_requests = {action_class.value: 0 for action_class in ActionClass}
        for (_, action_class), window in self._windows.items():
            total_requests[action_class.value] += window.count

        return {
            "initialized": self._initialized,
            "active_subjects": len({subject for subject, _ in self._windows}),
            "total_requests": total_requests,
            "config": self._config.model_dump(),
        }

    def cleanup_expired_windows(self) -> int:
        """Remove windows that are both expired and empty.

        Returns:
            Number of windows removed.
        """
        now = self._clock()
        expired = [
            key
            for key, window in self._windows.items()
            if window.is_expired(now) and window.count == 0
        ]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Removed %d idle rate limit windows", len(expired))
        return len(expired)

    def build_exceeded_response(
        self,
        action_class: ActionClass | str,
        result: RateLimitResult,
    ) -> RateLimitExceeded:
        """Build the 429 response body for a denied check."""
        action_class = ActionClass(action_class)
        retry_after = 60
        if result.reset_time is not None:
            retry_after = max(1, int(result.reset_time.timestamp() - self._clock()))
        return RateLimitExceeded(
            message=f"Rate limit exceeded: {result.limit} {action_class.value} requests per hour",
            action_class=action_class,
            limit=result.limit,
            retry_after=retry_after,
        )

    async def check_api_limit(
        self, subject_id: str, increment: bool = True
    ) -> RateLimitResult:
        return await self.check_limit(subject_id, ActionClass.API, increment=increment)

    async def check_auth_limit(
        self, subject_id: str, increment: bool = True
    ) -> RateLimitResult:
        return await self.check_limit(subject_id, ActionClass.AUTH, increment=increment)

    async def check_token_limit(
        self, subject_id: str, increment: bool = True
    ) -> RateLimitResult:
        return await self.check_limit(subject_id, ActionClass.TOKEN, increment=increment)

    def _get_window(
        self, subject_id: str, action_class: ActionClass, now: float
    ) -> RateLimitWindow:
        key = (subject_id, action_class)
        window = self._windows.get(key)
        if window is None:
            window = RateLimitWindow(window_start=now)
            self._windows[key] = window
        return window

    async def _run_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self.CLEANUP_INTERVAL_SECONDS)
            try:
                self.cleanup_expired_windows()
            except Exception as e:
                logger.exception("Rate limit window cleanup failed: %s", e)
