"""Rate limiting: subscription tiers, fixed-window counters and suspicion scoring."""

from linktome.ratelimit.tiers import (
    DEFAULT_TIER_LIMITS,
    UNLIMITED,
    TierLimits,
    UserTier,
    WindowLimit,
    resolve_tier,
)
from linktome.ratelimit.suspicion import SuspicionReport, score_request
from linktome.ratelimit.limiter import ApiRateLimitResult, RateLimiter, RateLimitResult

__all__ = [
    "DEFAULT_TIER_LIMITS",
    "UNLIMITED",
    "TierLimits",
    "UserTier",
    "WindowLimit",
    "resolve_tier",
    "SuspicionReport",
    "score_request",
    "ApiRateLimitResult",
    "RateLimiter",
    "RateLimitResult",
]
