"""
Local storage implementation for development and tests.

Works without any external services.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any

from linktome.storage.base import TableStorage


class InMemoryTableStorage(TableStorage):
    """In-memory table storage for development."""

    def __init__(self):
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    async def save(self, table: str, id: str, data: dict[str, Any]) -> None:
        if table not in self._data:
            self._data[table] = {}
        self._data[table][id] = {
            **copy.deepcopy(data),
            "_id": id,
            "_updated_at": datetime.now(timezone.utc).isoformat(),
        }

    async def get(self, table: str, id: str) -> dict[str, Any] | None:
        row = self._data.get(table, {}).get(id)
        # Callers get a copy; mutating it must not touch stored state
        return copy.deepcopy(row) if row is not None else None

    async def delete(self, table: str, id: str) -> bool:
        if table in self._data and id in self._data[table]:
            del self._data[table][id]
            return True
        return False

    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if table not in self._data:
            return []

        results = list(self._data[table].values())

        # Apply filters
        if filters:
            filtered = []
            for row in results:
                match = True
                for key, value in filters.items():
                    if row.get(key) != value:
                        match = False
                        break
                if match:
                    filtered.append(row)
            results = filtered

        # Apply pagination
        return [copy.deepcopy(row) for row in results[offset:offset + limit]]

    async def update(self, table: str, id: str, updates: dict[str, Any]) -> bool:
        if table in self._data and id in self._data[table]:
            self._data[table][id].update(copy.deepcopy(updates))
            self._data[table][id]["_updated_at"] = datetime.now(timezone.utc).isoformat()
            return True
        return False

    def count(self, table: str) -> int:
        """Number of rows in a table (handy for tests and health output)."""
        return len(self._data.get(table, {}))


def create_local_storage() -> InMemoryTableStorage:
    """Create the storage used when no external table service is configured."""
    return InMemoryTableStorage()
