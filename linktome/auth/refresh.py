"""
Refresh tokens.

Opaque 64-byte random secrets, base64url encoded without padding so the
token itself can be used as the table row key. Rows are soft-deleted
(valid=False) on logout and rotation, and physically removed by sweep().
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from linktome.config import AuthConfig
from linktome.core.utils import Clock, parse_timestamp, utc_now
from linktome.storage.base import Collections, TableStorage

logger = logging.getLogger(__name__)

REFRESH_TOKEN_BYTES = 64


@dataclass(frozen=True)
class RefreshValidation:
    """Result of checking a refresh token."""

    valid: bool
    owner_user_id: str | None = None
    expires_at: datetime | None = None
    reason: str | None = None


def generate_refresh_token() -> str:
    """64 random bytes, URL-safe base64 (no '+', '/' or '=' padding)."""
    raw = secrets.token_bytes(REFRESH_TOKEN_BYTES)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class RefreshTokenStore:
    """Issues, validates, rotates and sweeps refresh tokens."""

    def __init__(self, storage: TableStorage, config: AuthConfig, clock: Clock = utc_now):
        self.storage = storage
        self.config = config
        self.clock = clock
        self._rotation_lock = asyncio.Lock()

    async def issue(self, user_id: str) -> dict[str, Any]:
        """Create and persist a refresh token for a user."""
        now = self.clock()
        token = generate_refresh_token()
        row = {
            "id": token,
            "token": token,
            "owner_user_id": user_id,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=self.config.refresh_token_ttl_seconds)).isoformat(),
            "valid": True,
        }
        await self.storage.save(Collections.REFRESH_TOKENS, token, row)
        return row

    async def validate(self, token: str | None) -> RefreshValidation:
        """Reject unknown, invalidated or expired tokens."""
        if not token:
            return RefreshValidation(valid=False, reason="Missing refresh token")

        row = await self.storage.get(Collections.REFRESH_TOKENS, token)
        if not row:
            return RefreshValidation(valid=False, reason="Refresh token not found")
        if not row.get("valid", False):
            return RefreshValidation(valid=False, owner_user_id=row.get("owner_user_id"),
                                     reason="Refresh token has been invalidated")

        expires_at = parse_timestamp(row.get("expires_at"))
        if expires_at is None or self.clock() >= expires_at:
            return RefreshValidation(valid=False, owner_user_id=row.get("owner_user_id"),
                                     expires_at=expires_at, reason="Refresh token has expired")

        return RefreshValidation(valid=True, owner_user_id=row["owner_user_id"], expires_at=expires_at)

    async def invalidate(self, token: str) -> int:
        """
        Mark every row holding this token as invalid.

        Returns the number of rows invalidated. More than one row can
        exist for a token written by older code paths.
        """
        count = 0
        rows = [row async for row in self.storage.scan(Collections.REFRESH_TOKENS, {"token": token})]
        for row in rows:
            if row.get("valid", False):
                await self.storage.update(Collections.REFRESH_TOKENS, row["id"], {"valid": False})
                count += 1
        return count

    async def rotate(self, token: str) -> tuple[RefreshValidation, dict[str, Any] | None]:
        """
        Exchange a valid refresh token for a new one.

        The presented token is invalidated before the new one is issued.
        Only one of several concurrent rotations of the same token wins;
        the others get an invalid result and no new token.
        """
        async with self._rotation_lock:
            result = await self.validate(token)
            if not result.valid:
                return result, None
            if not await self.invalidate(token):
                return RefreshValidation(valid=False, owner_user_id=result.owner_user_id,
                                         reason="Refresh token has been invalidated"), None

        return result, await self.issue(result.owner_user_id)

    async def sweep(self) -> int:
        """Delete expired and invalidated rows. Returns how many were removed."""
        now = self.clock()
        stale = []
        async for row in self.storage.scan(Collections.REFRESH_TOKENS):
            expires_at = parse_timestamp(row.get("expires_at"))
            if not row.get("valid", False) or expires_at is None or expires_at <= now:
                stale.append(row["id"])

        for row_id in stale:
            await self.storage.delete(Collections.REFRESH_TOKENS, row_id)
        if stale:
            logger.info(f"Swept {len(stale)} refresh tokens")
        return len(stale)
