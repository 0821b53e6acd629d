"""
Periodic maintenance.

- sweep_refresh_tokens: delete expired or invalidated refresh tokens
- sweep_rate_limits: delete counters older than the longest window
- enforce_key_slots: disable API keys beyond each user's tier allowance

The scheduler that calls these lives outside this package;
`python -m linktome.main sweep` runs them once.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from linktome.ratelimit.tiers import resolve_tier
from linktome.storage.base import Collections

if TYPE_CHECKING:
    from linktome.services import Services

logger = logging.getLogger(__name__)


async def sweep_refresh_tokens(services: Services) -> int:
    return await services.refresh_tokens.sweep()


async def sweep_rate_limits(services: Services) -> int:
    return await services.limiter.sweep()


async def enforce_key_slots(services: Services) -> int:
    """Apply each user's tier key cap. Returns how many keys were disabled."""
    disabled = 0
    async for user in services.storage.scan(Collections.USERS):
        limits = services.config.limits_for(resolve_tier(user.get("tier")))
        disabled += len(await services.api_keys.enforce_slot_limit(user["id"], limits.max_api_keys))
    return disabled


async def run_all(services: Services) -> dict[str, int]:
    """Run every job once. A failing job is logged and does not stop the others."""
    results: dict[str, int] = {}
    for name, job in (
        ("refresh_tokens", sweep_refresh_tokens),
        ("rate_limits", sweep_rate_limits),
        ("api_key_slots", enforce_key_slots),
    ):
        try:
            results[name] = await job(services)
        except Exception as e:
            logger.error(f"Maintenance job {name} failed: {e!r}")
            results[name] = -1
    logger.info(f"Maintenance complete: {results}")
    return results
