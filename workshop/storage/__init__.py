"""Workshop storage backends.

This module provides the storage and sync layer for workshop.
Local-first storage using SQLite, reconciled with a remote backend.
"""

from .base import LocalStore
from .remote import RemoteClient
from .sqlite import SQLiteStorage
from .sync_engine import SyncEngine

__all__ = [
    # Protocol
    "LocalStore",
    # Implementations
    "SQLiteStorage",
    "RemoteClient",
    "SyncEngine",
]
