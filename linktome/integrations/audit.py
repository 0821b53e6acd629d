# =============================================================================
# Security Audit Log
# =============================================================================
#
# Every authentication / authorization / throttling decision worth a
# second look is recorded to the `security_events` table.
#
# Usage:
#   audit.emit(SecurityEvent.TOKEN_INVALID, ip=request.client_ip, endpoint=...)
#
# emit() schedules the write in the background and returns immediately.
# Neither emit() nor record() ever raises into the caller.
#
# =============================================================================

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from linktome.core.tasks import BackgroundTasks
from linktome.core.utils import Clock, generate_id, redact_email, utc_now
from linktome.storage.base import Collections, TableStorage

logger = logging.getLogger(__name__)


class SecurityEvent(str, Enum):
    """Audit event types."""

    TOKEN_INVALID = "token_invalid"
    API_KEY_INVALID = "api_key_invalid"
    BOT_DETECTED = "bot_detected"
    RATE_LIMITED = "rate_limited"
    PERMISSION_DENIED = "permission_denied"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    SIGNUP = "signup"
    LOGOUT = "logout"
    REFRESH_FAILED = "refresh_failed"
    API_KEY_CREATED = "api_key_created"
    API_KEY_DELETED = "api_key_deleted"
    INVALID_ROLE = "invalid_role"


class SecurityAuditLog:
    """Fire-and-forget sink for security events."""

    def __init__(
        self,
        storage: TableStorage,
        tasks: BackgroundTasks | None = None,
        clock: Clock = utc_now,
    ):
        self.storage = storage
        self.tasks = tasks or BackgroundTasks()
        self.clock = clock

    def emit(
        self,
        event_type: SecurityEvent | str,
        user_id: str | None = None,
        email: str | None = None,
        ip: str | None = None,
        endpoint: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an event in the background. Returns immediately."""
        if isinstance(event_type, SecurityEvent):
            event_type = event_type.value
        self.tasks.spawn(
            self.record(event_type, user_id, email, ip, endpoint, metadata),
            name=f"audit:{event_type}",
        )

    async def record(
        self,
        event_type: SecurityEvent | str,
        user_id: str | None = None,
        email: str | None = None,
        ip: str | None = None,
        endpoint: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Persist an event now. Storage failures are logged and dropped."""
        if isinstance(event_type, SecurityEvent):
            event_type = event_type.value

        event = {
            "id": generate_id("evt"),
            "event_type": event_type,
            "user_id": user_id,
            "email": redact_email(email),
            "ip": ip,
            "endpoint": endpoint,
            "metadata": dict(metadata or {}),
            "timestamp": self.clock().isoformat(),
        }
        logger.info(
            f"Security event {event_type} user={user_id} email={event['email']} "
            f"ip={ip} endpoint={endpoint}"
        )
        try:
            await self.storage.save(Collections.SECURITY_EVENTS, event["id"], event)
        except Exception as e:
            logger.warning(f"Failed to record security event {event_type}: {e!r}")
