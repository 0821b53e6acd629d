# =============================================================================
# Sentry Error Tracking Integration
# =============================================================================
#
# Setup:
#   1. Create a Python project in Sentry
#   2. Copy the DSN to .env: SENTRY_DSN=https://...@sentry.io/...
#
# Usage:
#   init_sentry() is called at app startup (linktome/api/app.py).
#   The dispatcher calls capture_exception() when a handler crashes.
#
# Credentials never leave the process: authorization, cookie and
# x-api-key headers are scrubbed from every event.
#
# =============================================================================

from __future__ import annotations

import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from linktome.config import Settings, get_settings

logger = logging.getLogger(__name__)

SCRUBBED_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key")


def init_sentry(settings: Settings | None = None) -> bool:
    """
    Initialize Sentry error tracking.

    Returns True if initialized, False if skipped.
    """
    settings = settings or get_settings()

    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,

        # Sample 10% of transactions in prod
        traces_sample_rate=0.1 if settings.is_production else 1.0,

        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],

        # Don't send PII by default
        send_default_pii=False,

        before_send=_filter_events,
        before_send_transaction=_filter_transactions,
    )

    logger.info(f"Sentry initialized for {settings.environment}")
    return True


def scrub_headers(headers: dict) -> dict:
    """Replace credential-bearing header values in place."""
    for key in list(headers.keys()):
        if key.lower() in SCRUBBED_HEADERS:
            headers[key] = "[Filtered]"
    return headers


def _filter_events(event: dict, hint: dict) -> dict | None:
    """Scrub credentials from request data."""
    request = event.get("request")
    if request and isinstance(request.get("headers"), dict):
        scrub_headers(request["headers"])
    if request and request.get("cookies"):
        request["cookies"] = "[Filtered]"
    return event


def _filter_transactions(event: dict, hint: dict) -> dict | None:
    """Filter out health checks."""
    if event.get("transaction", "") in ("/health", "/healthz", "/ready"):
        return None
    return event


def capture_exception(error: BaseException, **context) -> str | None:
    """
    Capture an exception to Sentry.

    Always logs it. Returns the event ID if captured, None otherwise.
    """
    logger.exception(f"Unhandled error: {error!r}", exc_info=error)
    if not sentry_sdk.get_client().is_active():
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)
