"""
Subscription tiers and their API limits.

A tier decides how hard an API key owner may hit the API: requests per
key per minute, requests per owner per day, and how many active keys
the owner may hold. -1 means unlimited for that axis.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger(__name__)

UNLIMITED = -1


class UserTier(str, Enum):
    """Platform-wide subscription tier."""

    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class WindowLimit:
    """A fixed-window limit: at most max_requests per window_seconds."""

    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class TierLimits:
    """Limits for one subscription tier."""

    requests_per_minute: int
    requests_per_day: int
    max_api_keys: int


DEFAULT_TIER_LIMITS: Mapping[UserTier, TierLimits] = MappingProxyType({
    UserTier.FREE: TierLimits(requests_per_minute=20, requests_per_day=500, max_api_keys=1),
    UserTier.PRO: TierLimits(requests_per_minute=60, requests_per_day=10_000, max_api_keys=5),
    UserTier.PREMIUM: TierLimits(requests_per_minute=300, requests_per_day=100_000, max_api_keys=20),
    UserTier.ENTERPRISE: TierLimits(requests_per_minute=1_000, requests_per_day=UNLIMITED, max_api_keys=100),
})


def resolve_tier(value: Any) -> UserTier:
    """
    Map a stored subscription tier onto UserTier.

    Unknown or missing tiers get the free limits.
    """
    if isinstance(value, UserTier):
        return value
    if not value:
        return UserTier.FREE
    try:
        return UserTier(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unknown subscription tier '{value}' - applying free tier limits")
        return UserTier.FREE


def build_tier_limits(
    overrides: Mapping[str, Mapping[str, int]] | None = None,
) -> Mapping[UserTier, TierLimits]:
    """
    Merge per-tier overrides onto the default table.

    Args:
        overrides: {"pro": {"requests_per_day": 20000}, ...}

    Returns:
        Read-only tier -> limits mapping

    Raises:
        ValueError: Unknown tier name or limit field
    """
    table = dict(DEFAULT_TIER_LIMITS)
    for tier_name, fields in (overrides or {}).items():
        tier = UserTier(tier_name.lower())
        unknown = set(fields) - set(TierLimits.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown tier limit fields for '{tier_name}': {sorted(unknown)}")
        table[tier] = replace(table[tier], **{k: int(v) for k, v in fields.items()})
    return MappingProxyType(table)
