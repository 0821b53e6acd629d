"""
Tests for settings and the immutable auth config.
"""

import pytest

from linktome.config import (
    DEV_SIGNING_KEY,
    AuthConfig,
    BotPolicy,
    ConfigurationError,
    Settings,
)
from linktome.ratelimit.tiers import UserTier, build_tier_limits, resolve_tier

from tests.conftest import SIGNING_KEY


def settings(**overrides):
    values = {"environment": "development", "jwt_secret_key": "", "sentry_dsn": ""}
    values.update(overrides)
    return Settings(**values)


class TestAuthConfig:
    def test_short_signing_key_rejected(self):
        with pytest.raises(ConfigurationError):
            AuthConfig(signing_key="too-short")

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ConfigurationError):
            AuthConfig(signing_key=SIGNING_KEY, suspicious_score_threshold=300, bot_score_threshold=200)

    def test_error_detail_only_in_development(self):
        assert AuthConfig(signing_key=SIGNING_KEY, environment="development").expose_error_detail
        assert not AuthConfig(signing_key=SIGNING_KEY, environment="staging").expose_error_detail
        assert not AuthConfig(signing_key=SIGNING_KEY, environment="production").expose_error_detail


class TestFromSettings:
    def test_production_requires_signing_key(self):
        with pytest.raises(ConfigurationError):
            AuthConfig.from_settings(settings(environment="production"))

    def test_development_falls_back_to_dev_key(self):
        config = AuthConfig.from_settings(settings())
        assert config.signing_key == DEV_SIGNING_KEY

    def test_values_carried_over(self):
        config = AuthConfig.from_settings(settings(
            jwt_secret_key=SIGNING_KEY,
            cors_origins="https://a.example, https://b.example",
            sensitive_public_endpoints="login,signup",
            bot_policy="THROTTLE",
            jwt_access_token_expire_minutes=5,
            admin_rate_limit_requests=7,
        ))

        assert config.signing_key == SIGNING_KEY
        assert config.allowed_origins == ("https://a.example", "https://b.example")
        assert config.sensitive_public_endpoints == frozenset({"public/login", "public/signup"})
        assert config.bot_policy == BotPolicy.THROTTLE
        assert config.access_token_ttl_seconds == 300
        assert config.admin_limit.max_requests == 7

    def test_unknown_bot_policy(self):
        with pytest.raises(ConfigurationError):
            AuthConfig.from_settings(settings(bot_policy="shrug"))

    def test_tier_overrides(self):
        config = AuthConfig.from_settings(settings(tier_rate_limits={"pro": {"requests_per_day": 20000}}))

        assert config.limits_for(UserTier.PRO).requests_per_day == 20000
        assert config.limits_for(UserTier.PRO).requests_per_minute == 60

    def test_bad_tier_override(self):
        with pytest.raises(ConfigurationError):
            AuthConfig.from_settings(settings(tier_rate_limits={"gold": {"requests_per_day": 1}}))
        with pytest.raises(ConfigurationError):
            AuthConfig.from_settings(settings(tier_rate_limits={"pro": {"requests_per_hour": 1}}))


class TestTiers:
    def test_unknown_tier_gets_free_limits(self):
        assert resolve_tier("platinum") == UserTier.FREE
        assert resolve_tier(None) == UserTier.FREE
        assert resolve_tier("Pro") == UserTier.PRO

    def test_overrides_do_not_mutate_defaults(self):
        build_tier_limits({"free": {"max_api_keys": 9}})
        assert build_tier_limits()[UserTier.FREE].max_api_keys == 1
