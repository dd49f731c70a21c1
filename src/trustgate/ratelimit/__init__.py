"""Rate limiting module.

Per-subject quotas for three action classes:
- api: requests admitted by the gateway
- auth: OAuth authorization attempts
- token: token refresh and installation token requests
"""

from trustgate.ratelimit.limiter import RateLimiter
from trustgate.ratelimit.models import (
    ActionClass,
    ActionUsage,
    RateLimitConfig,
    RateLimitExceeded,
    RateLimitResult,
    RateLimitWindow,
)

__all__ = [
    # Limiter
    "RateLimiter",
    # Models
    "ActionClass",
    "ActionUsage",
    "RateLimitConfig",
    "RateLimitExceeded",
    "RateLimitResult",
    "RateLimitWindow",
]
