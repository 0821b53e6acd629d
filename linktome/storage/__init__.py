"""
Storage abstractions.

Integration points:
- TableStorage -> any key-value table service (rows keyed by table + id)
"""

from linktome.storage.base import (
    Collections,
    StorageError,
    TableStorage,
)
from linktome.storage.local import InMemoryTableStorage, create_local_storage

__all__ = [
    "Collections",
    "StorageError",
    "TableStorage",
    "InMemoryTableStorage",
    "create_local_storage",
]
