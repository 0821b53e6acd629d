"""Core utilities shared by every linktome module."""

from linktome.core.tasks import BackgroundTasks
from linktome.core.utils import (
    Clock,
    generate_id,
    random_alphanumeric,
    redact_email,
    utc_now,
)

__all__ = [
    "BackgroundTasks",
    "Clock",
    "generate_id",
    "random_alphanumeric",
    "redact_email",
    "utc_now",
]
