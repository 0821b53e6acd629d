"""
Fixed-window rate limiter.

Counters live in the `rate_limits` table, one row per
(endpoint class, identifier):

    {scope_key, window_start, request_count, last_request_at}

Reads and writes are plain get/save without compare-and-swap, so
concurrent requests from one identifier can briefly over-admit. This is
a soft limiter.

Any storage failure fails OPEN: the request is allowed and a warning
logged. An infrastructure hiccup must not turn into a full outage.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from linktome.core.utils import Clock, parse_timestamp, utc_now
from linktome.ratelimit.suspicion import SuspicionReport
from linktome.ratelimit.tiers import UNLIMITED, UserTier, WindowLimit
from linktome.storage.base import Collections, TableStorage

if TYPE_CHECKING:
    from linktome.config import AuthConfig

logger = logging.getLogger(__name__)

MINUTE = 60
DAY = 24 * 3600


def scope_key(endpoint_class: str, identifier: str) -> str:
    return f"{endpoint_class}:{identifier}"


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one fixed-window check."""

    allowed: bool
    limit: int
    remaining: int
    window_seconds: int
    retry_after: int = 0
    reset_at: datetime | None = None
    failed_open: bool = False

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @classmethod
    def unbounded(cls, window_seconds: int) -> RateLimitResult:
        return cls(allowed=True, limit=UNLIMITED, remaining=UNLIMITED, window_seconds=window_seconds)


@dataclass(frozen=True)
class ApiRateLimitResult:
    """Both tier axes for an API-key request: per key per minute, per owner per day."""

    minute: RateLimitResult
    day: RateLimitResult | None = None

    @property
    def allowed(self) -> bool:
        return self.minute.allowed and (self.day is None or self.day.allowed)

    @property
    def retry_after(self) -> int:
        blocked = [r.retry_after for r in (self.minute, self.day) if r is not None and not r.allowed]
        return max(blocked) if blocked else 0

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* headers describing the remaining quota."""
        headers: dict[str, str] = {}
        if not self.minute.unlimited:
            headers["X-RateLimit-Limit"] = str(self.minute.limit)
            headers["X-RateLimit-Remaining"] = str(max(self.minute.remaining, 0))
            if self.minute.reset_at is not None:
                headers["X-RateLimit-Reset"] = str(int(self.minute.reset_at.timestamp()))
        if self.day is not None and not self.day.unlimited:
            headers["X-RateLimit-Limit-Day"] = str(self.day.limit)
            headers["X-RateLimit-Remaining-Day"] = str(max(self.day.remaining, 0))
        return headers


# =============================================================================
# Rate Limiter
# =============================================================================


class RateLimiter:
    """Fixed-window counters over the table store."""

    def __init__(self, storage: TableStorage, config: AuthConfig, clock: Clock = utc_now):
        self.storage = storage
        self.config = config
        self.clock = clock

    async def check(
        self,
        identifier: str,
        endpoint_class: str,
        max_requests: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """
        Count one request against (endpoint_class, identifier).

        max_requests == -1 means unlimited; nothing is stored.
        """
        if max_requests == UNLIMITED:
            return RateLimitResult.unbounded(window_seconds)

        now = self.clock()
        key = scope_key(endpoint_class, identifier)

        try:
            row = await self.storage.get(Collections.RATE_LIMITS, key)
            window_start = parse_timestamp(row.get("window_start")) if row else None

            if window_start is None or (now - window_start).total_seconds() >= window_seconds:
                await self.storage.save(Collections.RATE_LIMITS, key, self._counter(key, now, now, 1))
                return RateLimitResult(
                    allowed=True,
                    limit=max_requests,
                    remaining=max_requests - 1,
                    window_seconds=window_seconds,
                    reset_at=now + timedelta(seconds=window_seconds),
                )

            count = int(row.get("request_count", 0))
            elapsed = (now - window_start).total_seconds()
            reset_at = window_start + timedelta(seconds=window_seconds)

            if count >= max_requests:
                retry_after = max(1, math.ceil(window_seconds - elapsed))
                logger.warning(f"Rate limit exceeded for {key} ({count}/{max_requests})")
                return RateLimitResult(
                    allowed=False,
                    limit=max_requests,
                    remaining=0,
                    window_seconds=window_seconds,
                    retry_after=retry_after,
                    reset_at=reset_at,
                )

            await self.storage.save(
                Collections.RATE_LIMITS, key, self._counter(key, window_start, now, count + 1)
            )
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests - count - 1,
                window_seconds=window_seconds,
                reset_at=reset_at,
            )

        except Exception as e:
            logger.warning(f"Rate limit check failed for {key}, allowing request: {e!r}")
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests,
                window_seconds=window_seconds,
                failed_open=True,
            )

    @staticmethod
    def _counter(key: str, window_start: datetime, now: datetime, count: int) -> dict[str, Any]:
        return {
            "scope_key": key,
            "window_start": window_start.isoformat(),
            "request_count": count,
            "last_request_at": now.isoformat(),
        }

    # =========================================================================
    # Endpoint classes
    # =========================================================================

    async def check_api_request(self, key_id: str, owner_user_id: str, tier: UserTier) -> ApiRateLimitResult:
        """
        Tiered limits for an API-key request.

        The minute window is per key, the day window per owning user.
        Both must pass; the day counter is not touched once the minute
        window has already rejected.
        """
        limits = self.config.limits_for(tier)
        minute = await self.check(key_id, "api:minute", limits.requests_per_minute, MINUTE)
        if not minute.allowed:
            return ApiRateLimitResult(minute=minute)
        day = await self.check(owner_user_id, "api:day", limits.requests_per_day, DAY)
        return ApiRateLimitResult(minute=minute, day=day)

    async def check_auth_endpoint(self, ip: str, endpoint: str, report: SuspicionReport) -> RateLimitResult:
        """Per-IP limit on a public auth endpoint, stricter the more suspicious the request."""
        band, limit = self.auth_band(report)
        return await self.check(ip, f"auth:{band}:{endpoint}", limit.max_requests, limit.window_seconds)

    def auth_band(self, report: SuspicionReport) -> tuple[str, WindowLimit]:
        if report.is_likely_bot:
            return "bot", self.config.bot_auth_limit
        if report.score >= self.config.suspicious_score_threshold:
            return "suspicious", self.config.suspicious_auth_limit
        return "clean", self.config.auth_limit

    async def check_admin(self, user_id: str) -> RateLimitResult:
        """Flat per-user limit on session routes."""
        limit = self.config.admin_limit
        return await self.check(user_id, "admin", limit.max_requests, limit.window_seconds)

    # =========================================================================
    # Maintenance
    # =========================================================================

    @property
    def longest_window_seconds(self) -> int:
        return max(
            DAY,
            self.config.auth_limit.window_seconds,
            self.config.suspicious_auth_limit.window_seconds,
            self.config.bot_auth_limit.window_seconds,
            self.config.admin_limit.window_seconds,
        )

    async def sweep(self) -> int:
        """Delete counters whose window ended longer ago than the longest window in use."""
        now = self.clock()
        cutoff = now - timedelta(seconds=self.longest_window_seconds)
        stale = []
        async for row in self.storage.scan(Collections.RATE_LIMITS):
            window_start = parse_timestamp(row.get("window_start"))
            if window_start is None or window_start <= cutoff:
                stale.append(row["scope_key"])

        for key in stale:
            await self.storage.delete(Collections.RATE_LIMITS, key)
        if stale:
            logger.info(f"Swept {len(stale)} rate limit counters")
        return len(stale)
