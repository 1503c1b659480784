"""
Persistent record stores.

Provides:
- RecordStore: abstract keyed store with secondary-index queries
- MemoryStore: dict-backed store for tests and ephemeral clients
- SQLiteDatabase / SQLiteStore: aiosqlite-backed durable store
"""

from .base import (
    CACHE_TABLE,
    OPERATIONS_TABLE,
    UPLOADS_TABLE,
    Record,
    RecordStore,
    TableSchema,
)
from .memory import MemoryStore
from .sqlite import SQLiteDatabase, SQLiteStore

__all__ = [
    "CACHE_TABLE",
    "OPERATIONS_TABLE",
    "UPLOADS_TABLE",
    "MemoryStore",
    "Record",
    "RecordStore",
    "SQLiteDatabase",
    "SQLiteStore",
    "TableSchema",
]
