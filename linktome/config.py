"""
Application configuration.

Settings are loaded from environment variables (and .env) once.
AuthConfig is the immutable view of them that the token service,
rate limiter and dispatcher receive at construction time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Mapping

from pydantic_settings import BaseSettings

from linktome.ratelimit.tiers import (
    DEFAULT_TIER_LIMITS,
    TierLimits,
    UserTier,
    WindowLimit,
    build_tier_limits,
)

logger = logging.getLogger(__name__)

MIN_SIGNING_KEY_LENGTH = 64

# Only ever used outside production
DEV_SIGNING_KEY = (
    "linktome-development-signing-key-do-not-use-in-production-"
    "0123456789abcdef0123456789abcdef"
)


class ConfigurationError(Exception):
    """Raised when configuration is missing or malformed."""
    pass


class BotPolicy(str, Enum):
    """What to do with requests that score as likely bots."""

    REJECT = "reject"      # 400 straight away
    THROTTLE = "throttle"  # apply the strict bot rate-limit tier


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # ==========================================================================
    # Environment
    # ==========================================================================

    environment: str = "development"
    debug: bool = False

    # ==========================================================================
    # API Server
    # ==========================================================================

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # ==========================================================================
    # Authentication
    # ==========================================================================

    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "linktome"
    jwt_access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    auth_cookie_name: str = "auth"

    # ==========================================================================
    # Bot detection / rate limiting
    # ==========================================================================

    sensitive_public_endpoints: str = "login,signup,refresh"
    bot_score_threshold: int = 200
    suspicious_score_threshold: int = 100
    bot_policy: str = "reject"

    auth_rate_limit_requests: int = 10
    auth_rate_limit_window_seconds: int = 60
    suspicious_auth_rate_limit_requests: int = 5
    suspicious_auth_rate_limit_window_seconds: int = 60
    bot_auth_rate_limit_requests: int = 2
    bot_auth_rate_limit_window_seconds: int = 300

    admin_rate_limit_requests: int = 300
    admin_rate_limit_window_seconds: int = 60

    # JSON, e.g. {"pro": {"requests_per_day": 20000}}
    tier_rate_limits: dict[str, dict[str, int]] = {}

    # ==========================================================================
    # Optional Services
    # ==========================================================================

    sentry_dsn: str = ""

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def sensitive_endpoints_list(self) -> list[str]:
        return [f"public/{e.strip()}" for e in self.sensitive_public_endpoints.split(",") if e.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# =============================================================================
# Immutable auth configuration
# =============================================================================


@dataclass(frozen=True)
class AuthConfig:
    """
    Everything the request pipeline needs to know, fixed at startup.

    Build it with AuthConfig.from_settings() in the app, or directly
    in tests.
    """

    signing_key: str
    environment: str = "development"
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "linktome"
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    auth_cookie_name: str = "auth"
    allowed_origins: tuple[str, ...] = ()
    sensitive_public_endpoints: frozenset[str] = frozenset(
        {"public/login", "public/signup", "public/refresh"}
    )
    bot_score_threshold: int = 200
    suspicious_score_threshold: int = 100
    bot_policy: BotPolicy = BotPolicy.REJECT
    auth_limit: WindowLimit = WindowLimit(10, 60)
    suspicious_auth_limit: WindowLimit = WindowLimit(5, 60)
    bot_auth_limit: WindowLimit = WindowLimit(2, 300)
    admin_limit: WindowLimit = WindowLimit(300, 60)
    tier_limits: Mapping[UserTier, TierLimits] = field(default_factory=lambda: DEFAULT_TIER_LIMITS)

    def __post_init__(self):
        if len(self.signing_key or "") < MIN_SIGNING_KEY_LENGTH:
            raise ConfigurationError(
                f"Signing key must be at least {MIN_SIGNING_KEY_LENGTH} characters"
            )
        if self.suspicious_score_threshold > self.bot_score_threshold:
            raise ConfigurationError("Suspicious score threshold cannot exceed the bot threshold")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def expose_error_detail(self) -> bool:
        """Internal error detail is only ever returned to clients in development."""
        return self.environment == "development"

    def limits_for(self, tier: UserTier) -> TierLimits:
        return self.tier_limits.get(tier, self.tier_limits[UserTier.FREE])

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthConfig:
        """
        Build the immutable config from loaded settings.

        Raises:
            ConfigurationError: Signing key absent/short in production,
                or any malformed value
        """
        signing_key = settings.jwt_secret_key
        if len(signing_key) < MIN_SIGNING_KEY_LENGTH:
            if settings.is_production:
                raise ConfigurationError(
                    "JWT_SECRET_KEY must be set to at least "
                    f"{MIN_SIGNING_KEY_LENGTH} characters in production"
                )
            logger.warning("JWT_SECRET_KEY missing or too short - using development signing key")
            signing_key = DEV_SIGNING_KEY

        try:
            bot_policy = BotPolicy(settings.bot_policy.lower())
        except ValueError:
            raise ConfigurationError(f"Unknown bot policy: {settings.bot_policy}")

        try:
            tier_limits = build_tier_limits(settings.tier_rate_limits)
        except ValueError as e:
            raise ConfigurationError(f"Invalid tier rate limits: {e}")

        return cls(
            signing_key=signing_key,
            environment=settings.environment,
            jwt_algorithm=settings.jwt_algorithm,
            jwt_issuer=settings.jwt_issuer,
            access_token_ttl_seconds=settings.jwt_access_token_expire_minutes * 60,
            refresh_token_ttl_seconds=settings.refresh_token_expire_days * 24 * 3600,
            auth_cookie_name=settings.auth_cookie_name,
            allowed_origins=tuple(settings.cors_origins_list),
            sensitive_public_endpoints=frozenset(settings.sensitive_endpoints_list),
            bot_score_threshold=settings.bot_score_threshold,
            suspicious_score_threshold=settings.suspicious_score_threshold,
            bot_policy=bot_policy,
            auth_limit=WindowLimit(
                settings.auth_rate_limit_requests,
                settings.auth_rate_limit_window_seconds,
            ),
            suspicious_auth_limit=WindowLimit(
                settings.suspicious_auth_rate_limit_requests,
                settings.suspicious_auth_rate_limit_window_seconds,
            ),
            bot_auth_limit=WindowLimit(
                settings.bot_auth_rate_limit_requests,
                settings.bot_auth_rate_limit_window_seconds,
            ),
            admin_limit=WindowLimit(
                settings.admin_rate_limit_requests,
                settings.admin_rate_limit_window_seconds,
            ),
            tier_limits=tier_limits,
        )
