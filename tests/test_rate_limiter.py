"""
Tests for the fixed-window rate limiter.
"""

from datetime import timedelta

import pytest

from linktome.config import AuthConfig
from linktome.ratelimit.limiter import DAY, RateLimiter, scope_key
from linktome.ratelimit.suspicion import SuspicionReport
from linktome.ratelimit.tiers import UNLIMITED, UserTier, build_tier_limits
from linktome.storage import Collections

from tests.conftest import SIGNING_KEY, FailingStorage


@pytest.fixture
def limiter(services):
    return services.limiter


CLEAN = SuspicionReport(score=0, reasons=(), is_likely_bot=False)
SUSPICIOUS = SuspicionReport(score=150, reasons=("missing Origin",), is_likely_bot=False)
BOT = SuspicionReport(score=400, reasons=("automation User-Agent",), is_likely_bot=True)


# =============================================================================
# Fixed window
# =============================================================================


class TestFixedWindow:
    async def test_exactly_max_requests_allowed(self, limiter):
        results = [await limiter.check("1.2.3.4", "test", 5, 60) for _ in range(5)]

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

    async def test_request_over_limit_rejected_with_retry_after(self, limiter, clock):
        for _ in range(5):
            await limiter.check("1.2.3.4", "test", 5, 60)
        clock.advance(20)

        result = await limiter.check("1.2.3.4", "test", 5, 60)
        assert not result.allowed
        assert result.remaining == 0
        assert result.retry_after == 40

    async def test_retry_after_is_at_least_one(self, limiter, clock):
        for _ in range(2):
            await limiter.check("1.2.3.4", "test", 2, 60)
        clock.advance(59.7)

        result = await limiter.check("1.2.3.4", "test", 2, 60)
        assert not result.allowed
        assert result.retry_after == 1

    async def test_window_resets_after_expiry(self, limiter, storage, clock):
        for _ in range(6):
            await limiter.check("1.2.3.4", "test", 5, 60)
        clock.advance(60)

        result = await limiter.check("1.2.3.4", "test", 5, 60)
        assert result.allowed
        row = await storage.get(Collections.RATE_LIMITS, scope_key("test", "1.2.3.4"))
        assert row["request_count"] == 1
        assert row["window_start"] == clock().isoformat()

    async def test_rejected_request_is_not_counted(self, limiter, storage):
        for _ in range(8):
            await limiter.check("1.2.3.4", "test", 3, 60)

        row = await storage.get(Collections.RATE_LIMITS, scope_key("test", "1.2.3.4"))
        assert row["request_count"] == 3

    async def test_identifiers_and_classes_are_independent(self, limiter):
        await limiter.check("a", "test", 1, 60)

        assert not (await limiter.check("a", "test", 1, 60)).allowed
        assert (await limiter.check("b", "test", 1, 60)).allowed
        assert (await limiter.check("a", "other", 1, 60)).allowed

    async def test_unlimited_stores_nothing(self, limiter, storage):
        result = await limiter.check("a", "test", UNLIMITED, 60)

        assert result.allowed
        assert result.unlimited
        assert storage.count(Collections.RATE_LIMITS) == 0


class TestFailOpen:
    @pytest.mark.parametrize("operation", ["get", "save"])
    async def test_storage_failure_allows_request(self, config, clock, operation):
        limiter = RateLimiter(FailingStorage({operation}), config, clock=clock)
        result = await limiter.check("1.2.3.4", "test", 1, 60)

        assert result.allowed
        assert result.failed_open


# =============================================================================
# Tiered API limits
# =============================================================================


class TestApiTiers:
    async def test_headers_describe_both_windows(self, limiter, clock):
        result = await limiter.check_api_request("key1", "owner1", UserTier.FREE)

        assert result.allowed
        reset = int((clock() + timedelta(seconds=60)).timestamp())
        assert result.headers() == {
            "X-RateLimit-Limit": "20",
            "X-RateLimit-Remaining": "19",
            "X-RateLimit-Reset": str(reset),
            "X-RateLimit-Limit-Day": "500",
            "X-RateLimit-Remaining-Day": "499",
        }

    async def test_unlimited_day_has_no_day_headers(self, limiter):
        result = await limiter.check_api_request("key1", "owner1", UserTier.ENTERPRISE)

        headers = result.headers()
        assert headers["X-RateLimit-Limit"] == "1000"
        assert "X-RateLimit-Limit-Day" not in headers

    async def test_minute_window_is_per_key_day_window_per_owner(self, clock, storage):
        config = AuthConfig(
            signing_key=SIGNING_KEY,
            tier_limits=build_tier_limits({"free": {"requests_per_minute": 2, "requests_per_day": 3}}),
        )
        limiter = RateLimiter(storage, config, clock=clock)

        assert (await limiter.check_api_request("key1", "owner1", UserTier.FREE)).allowed
        assert (await limiter.check_api_request("key1", "owner1", UserTier.FREE)).allowed
        assert not (await limiter.check_api_request("key1", "owner1", UserTier.FREE)).allowed

        # Another key of the same owner has its own minute window but shares the day
        assert (await limiter.check_api_request("key2", "owner1", UserTier.FREE)).allowed
        blocked = await limiter.check_api_request("key2", "owner1", UserTier.FREE)
        assert not blocked.allowed
        assert blocked.day is not None and not blocked.day.allowed
        assert blocked.retry_after > 60

    async def test_minute_rejection_does_not_touch_day_counter(self, clock, storage):
        config = AuthConfig(
            signing_key=SIGNING_KEY,
            tier_limits=build_tier_limits({"free": {"requests_per_minute": 1}}),
        )
        limiter = RateLimiter(storage, config, clock=clock)

        await limiter.check_api_request("key1", "owner1", UserTier.FREE)
        rejected = await limiter.check_api_request("key1", "owner1", UserTier.FREE)

        assert not rejected.allowed
        assert rejected.day is None
        row = await storage.get(Collections.RATE_LIMITS, scope_key("api:day", "owner1"))
        assert row["request_count"] == 1


# =============================================================================
# Auth endpoint bands
# =============================================================================


class TestAuthBands:
    def test_band_selection(self, limiter, config):
        assert limiter.auth_band(CLEAN) == ("clean", config.auth_limit)
        assert limiter.auth_band(SUSPICIOUS) == ("suspicious", config.suspicious_auth_limit)
        assert limiter.auth_band(BOT) == ("bot", config.bot_auth_limit)

    async def test_bot_band_is_strictest(self, limiter):
        for _ in range(2):
            assert (await limiter.check_auth_endpoint("1.2.3.4", "public/login", BOT)).allowed

        result = await limiter.check_auth_endpoint("1.2.3.4", "public/login", BOT)
        assert not result.allowed
        assert result.retry_after == 300

    async def test_bands_count_separately(self, limiter):
        for _ in range(2):
            await limiter.check_auth_endpoint("1.2.3.4", "public/login", BOT)

        assert (await limiter.check_auth_endpoint("1.2.3.4", "public/login", CLEAN)).allowed

    async def test_admin_limit_is_per_user(self, storage, clock):
        config = AuthConfig(signing_key=SIGNING_KEY)
        limiter = RateLimiter(storage, config, clock=clock)

        result = await limiter.check_admin("user_1")
        assert result.limit == config.admin_limit.max_requests
        assert await storage.get(Collections.RATE_LIMITS, "admin:user_1") is not None


# =============================================================================
# Sweep
# =============================================================================


class TestSweep:
    async def test_sweep_removes_only_stale_counters(self, limiter, storage, clock):
        await limiter.check("old", "test", 5, 60)
        clock.advance(DAY + 1)
        await limiter.check("fresh", "test", 5, 60)

        assert await limiter.sweep() == 1
        assert await storage.get(Collections.RATE_LIMITS, scope_key("test", "old")) is None
        assert await storage.get(Collections.RATE_LIMITS, scope_key("test", "fresh")) is not None
