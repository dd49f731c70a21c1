"""Rate limiting data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from trustgate.config import Settings
from trustgate.config.settings import (
    DEFAULT_API_REQUESTS_PER_HOUR,
    DEFAULT_AUTH_ATTEMPTS_PER_HOUR,
    DEFAULT_TOKEN_REQUESTS_PER_HOUR,
)

HOUR = 3600


class ActionClass(str, Enum):
    """Kinds of actions with independent quotas."""

    API = "api"
    AUTH = "auth"
    TOKEN = "token"


@dataclass
class RateLimitWindow:
    """Request counter for one (subject, action class) pair."""

    window_start: float
    count: int = 0
    window_size: float = HOUR

    def is_expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_size

    def reset(self, now: float) -> None:
        self.count = 0
        self.window_start = now

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_size


class RateLimitResult(BaseModel):
    """Outcome of a rate limit check."""

    allowed: bool = Field(..., description="Whether the action may proceed")
    remaining: int | None = Field(default=None, description="Actions left in the window")
    limit: int | None = Field(default=None, description="Limit applied to the window")
    reset_time: datetime | None = Field(default=None, description="When the window resets")
    window_size: int | None = Field(default=None, description="Window size in seconds")


class RateLimitConfig(BaseModel):
    """Per-hour limits for each action class."""

    api_requests_per_hour: int = Field(default=DEFAULT_API_REQUESTS_PER_HOUR, ge=1)
    auth_attempts_per_hour: int = Field(default=DEFAULT_AUTH_ATTEMPTS_PER_HOUR, ge=1)
    token_requests_per_hour: int = Field(default=DEFAULT_TOKEN_REQUESTS_PER_HOUR, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitConfig":
        """Build limits from settings, falling back to defaults when unset."""
        limits: dict[str, int] = {}
        if settings.rate_limit_api_hour is not None:
            limits["api_requests_per_hour"] = settings.rate_limit_api_hour
        if settings.rate_limit_auth_hour is not None:
            limits["auth_attempts_per_hour"] = settings.rate_limit_auth_hour
        if settings.rate_limit_token_hour is not None:
            limits["token_requests_per_hour"] = settings.rate_limit_token_hour
        return cls(**limits)

    def limit_for(self, action_class: ActionClass) -> int:
        """Get the per-hour limit for an action class."""
        if action_class == ActionClass.AUTH:
            return self.auth_attempts_per_hour
        if action_class == ActionClass.TOKEN:
            return self.token_requests_per_hour
        return self.api_requests_per_hour


class ActionUsage(BaseModel):
    """Current usage of one action class for a subject."""

    current: int = Field(0, description="Actions counted in the current window")
    limit: int = Field(0, description="Configured limit")
    reset_time: datetime = Field(..., description="When the current window resets")


class RateLimitExceeded(BaseModel):
    """Rate limit exceeded response body."""

    error: str = Field(
        default="rate_limit_exceeded",
        description="Error code",
    )
    message: str = Field(..., description="Human-readable error message")
    action_class: ActionClass = Field(..., description="Throttled action class")
    limit: int | None = Field(None, description="The limit value")
    retry_after: int = Field(..., description="Seconds until the window resets")
