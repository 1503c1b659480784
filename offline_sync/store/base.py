"""
Abstract base class for persistent record stores.

A store holds the records of one table, keyed by a single field, with a
small set of secondary indices used for ready-set selection and FIFO
ordering. Records are plain dicts; queues convert them to models.

All writes are atomic per record. No business logic lives here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

Record = dict[str, Any]
ClaimPredicate = Callable[[Record], bool]


@dataclass(frozen=True)
class TableSchema:
    """Describes a table: its key, secondary indices and optional blob column."""

    name: str
    key_field: str
    indexes: tuple[str, ...] = ()
    blob_field: str | None = None

    def check_field(self, field_name: str) -> None:
        if field_name != self.key_field and field_name not in self.indexes:
            raise ValueError(f"Field '{field_name}' is not indexed on table '{self.name}'")


OPERATIONS_TABLE = TableSchema(
    name="sync_operations",
    key_field="id",
    indexes=("status", "entity", "created_at", "attempts"),
)

UPLOADS_TABLE = TableSchema(
    name="upload_queue",
    key_field="id",
    indexes=("upload_state", "created_at", "retry_count"),
    blob_field="blob",
)

CACHE_TABLE = TableSchema(
    name="response_cache",
    key_field="key",
    indexes=("expires_at",),
)


class RecordStore(ABC):
    """
    Durable keyed storage with secondary-index queries.

    Ordering ties are broken by insertion order, so records written with an
    identical ``created_at`` still come back FIFO.
    """

    schema: TableSchema

    @abstractmethod
    async def put(self, record: Record) -> None:
        """Insert or replace a record."""

    @abstractmethod
    async def get(self, key: str) -> Record | None:
        """Get a record by key, or None."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a record. Returns True if it existed."""

    @abstractmethod
    async def bulk_put(self, records: Iterable[Record]) -> None:
        """Insert or replace several records."""

    @abstractmethod
    async def query_by_index(
        self,
        field_name: str,
        value: Any,
        order_by: str | None = "created_at",
        descending: bool = False,
    ) -> list[Record]:
        """Get all records whose indexed field equals value."""

    @abstractmethod
    async def all(self, order_by: str | None = None, descending: bool = False) -> list[Record]:
        """Get every record in the table."""

    @abstractmethod
    async def count_by_index(self, field_name: str, value: Any) -> int:
        """Count records whose indexed field equals value."""

    @abstractmethod
    async def delete_by_index(self, field_name: str, value: Any) -> int:
        """Delete records whose indexed field equals value. Returns count."""

    @abstractmethod
    async def delete_below(self, field_name: str, bound: Any) -> int:
        """Delete records whose indexed field is strictly below bound."""

    @abstractmethod
    async def claim(
        self,
        key: str,
        predicate: ClaimPredicate,
        updates: Record,
    ) -> Record | None:
        """Atomically apply updates if the current record satisfies predicate.

        This is the compare-and-set used to mark an item in-flight before
        dispatch, so that two concurrent passes never dispatch the same item.

        Returns:
            The updated record, or None if missing or predicate failed
        """

    @abstractmethod
    async def clear(self) -> int:
        """Delete every record. Returns count."""

    async def close(self) -> None:
        """Release resources held by the store."""
