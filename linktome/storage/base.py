"""
Storage abstraction layer.

All persistence goes through the TableStorage interface: named tables
of JSON-like rows addressed by (table, row id). Writes are upserts
keyed by a unique id, which is all the auth pipeline relies on.

Implementations:
- InMemoryTableStorage (local development, tests)
- Any key-value table service (Azure Table Storage, DynamoDB, ...)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator


class StorageError(Exception):
    """Raised when the underlying store cannot complete an operation."""
    pass


class TableStorage(ABC):
    """
    Key-value table store.

    Rows are plain dicts. `save` replaces the row, `update` merges into
    an existing row and reports whether it existed.
    """

    @abstractmethod
    async def save(self, table: str, id: str, data: dict[str, Any]) -> None:
        """Insert or replace a row."""
        pass

    @abstractmethod
    async def get(self, table: str, id: str) -> dict[str, Any] | None:
        """Get a row by id."""
        pass

    @abstractmethod
    async def delete(self, table: str, id: str) -> bool:
        """Delete a row."""
        pass

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query rows whose fields equal every filter value."""
        pass

    @abstractmethod
    async def update(self, table: str, id: str, updates: dict[str, Any]) -> bool:
        """Partial update of a row."""
        pass

    async def scan(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        page_size: int = 500,
    ) -> AsyncIterator[dict[str, Any]]:
        """Iterate every matching row, page by page."""
        offset = 0
        while True:
            page = await self.query(table, filters, limit=page_size, offset=offset)
            for row in page:
                yield row
            if len(page) < page_size:
                return
            offset += page_size


# =============================================================================
# Table Names
# =============================================================================


class Collections:
    """Standard table names."""

    USERS = "users"
    REFRESH_TOKENS = "refresh_tokens"
    API_KEYS = "api_keys"
    USER_MANAGEMENTS = "user_managements"
    COMPANY_MEMBERS = "company_members"
    RATE_LIMITS = "rate_limits"
    SECURITY_EVENTS = "security_events"
    PROFILES = "profiles"
    LINKS = "links"
    COMPANY_PROFILES = "company_profiles"
    COMPANY_LINKS = "company_links"
