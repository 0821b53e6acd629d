"""
Shared utility functions for the linktome backend.

This module contains common utilities used across the codebase.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timezone
from typing import Callable

# Lowercase alphanumeric alphabet used for API key segments
ALPHANUMERIC = string.ascii_lowercase + string.digits

# Injectable "now" for anything time-dependent
Clock = Callable[[], datetime]


def generate_id(prefix: str = "") -> str:
    """
    Generate a unique ID with optional prefix.

    Args:
        prefix: Optional prefix (e.g., "user", "evt")

    Returns:
        A unique ID like "user_a1b2c3d4e5f6"
    """
    uid = str(uuid.uuid4())[:12]
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def random_alphanumeric(length: int) -> str:
    """
    Random lowercase alphanumeric string from a CSPRNG.

    secrets.choice draws uniformly from the alphabet, so every
    character position has the same distribution.
    """
    return "".join(secrets.choice(ALPHANUMERIC) for _ in range(length))


def redact_email(email: str | None) -> str | None:
    """
    Redact an email to its first three characters plus the domain.

    "johnny@example.com" -> "joh***@example.com"
    """
    if not email:
        return None
    local, sep, domain = email.partition("@")
    if not sep:
        return f"{local[:3]}***"
    return f"{local[:3]}***@{domain}"


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a stored ISO timestamp back into an aware datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
