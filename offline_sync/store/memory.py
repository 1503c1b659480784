"""In-memory record store for tests and ephemeral clients."""

from __future__ import annotations

import copy
from collections.abc import Iterable
from typing import Any

from .base import ClaimPredicate, Record, RecordStore, TableSchema


class MemoryStore(RecordStore):
    """Dict-backed store.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the stored copy. Dict insertion order doubles as the
    FIFO tie-breaker; replacing a record keeps its position.
    """

    def __init__(self, schema: TableSchema):
        self.schema = schema
        self._records: dict[str, Record] = {}

    def _key(self, record: Record) -> str:
        key = record.get(self.schema.key_field)
        if key is None:
            raise ValueError(f"Record missing key field '{self.schema.key_field}'")
        return str(key)

    def _sorted(self, records: list[Record], order_by: str | None, descending: bool) -> list[Record]:
        if order_by is None:
            return list(reversed(records)) if descending else records
        self.schema.check_field(order_by)
        # None sorts first; stable sort keeps insertion order for ties
        return sorted(
            records,
            key=lambda r: (r.get(order_by) is not None, r.get(order_by) if r.get(order_by) is not None else ""),
            reverse=descending,
        )

    async def put(self, record: Record) -> None:
        self._records[self._key(record)] = copy.deepcopy(record)

    async def get(self, key: str) -> Record | None:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def bulk_put(self, records: Iterable[Record]) -> None:
        for record in records:
            self._records[self._key(record)] = copy.deepcopy(record)

    async def query_by_index(
        self,
        field_name: str,
        value: Any,
        order_by: str | None = "created_at",
        descending: bool = False,
    ) -> list[Record]:
        self.schema.check_field(field_name)
        matches = [copy.deepcopy(r) for r in self._records.values() if r.get(field_name) == value]
        return self._sorted(matches, order_by, descending)

    async def all(self, order_by: str | None = None, descending: bool = False) -> list[Record]:
        return self._sorted([copy.deepcopy(r) for r in self._records.values()], order_by, descending)

    async def count_by_index(self, field_name: str, value: Any) -> int:
        self.schema.check_field(field_name)
        return sum(1 for r in self._records.values() if r.get(field_name) == value)

    async def delete_by_index(self, field_name: str, value: Any) -> int:
        self.schema.check_field(field_name)
        doomed = [k for k, r in self._records.items() if r.get(field_name) == value]
        for key in doomed:
            del self._records[key]
        return len(doomed)

    async def delete_below(self, field_name: str, bound: Any) -> int:
        self.schema.check_field(field_name)
        doomed = [
            k
            for k, r in self._records.items()
            if r.get(field_name) is not None and r[field_name] < bound
        ]
        for key in doomed:
            del self._records[key]
        return len(doomed)

    async def claim(self, key: str, predicate: ClaimPredicate, updates: Record) -> Record | None:
        # No await between check and write, so this is atomic on the event loop
        current = self._records.get(key)
        if current is None or not predicate(copy.deepcopy(current)):
            return None
        current.update(copy.deepcopy(updates))
        return copy.deepcopy(current)

    async def clear(self) -> int:
        count = len(self._records)
        self._records.clear()
        return count
