"""
SQLite record store.

One database file holds the operation queue, the upload queue and the
response cache. Each table keeps its indexed fields as real columns (for
ready-set selection, FIFO ordering and expiry sweeps), the rest of the
record as a JSON document, and binary payloads in a BLOB column.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import StoreError
from .base import (
    CACHE_TABLE,
    OPERATIONS_TABLE,
    UPLOADS_TABLE,
    ClaimPredicate,
    Record,
    RecordStore,
    TableSchema,
)

logger = logging.getLogger(__name__)

DEFAULT_TABLES = (OPERATIONS_TABLE, UPLOADS_TABLE, CACHE_TABLE)


class SQLiteDatabase:
    """
    Shared aiosqlite connection for all offline sync tables.

    Writes go through a single asyncio lock so that read-check-write
    sequences (claims) are atomic with respect to other coroutines.
    """

    def __init__(self, db_path: str | Path = ":memory:", tables: Iterable[TableSchema] = DEFAULT_TABLES):
        self.db_path = db_path
        self.tables = {t.name: t for t in tables}
        self.conn: aiosqlite.Connection | None = None
        self.lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    async def create(
        cls,
        db_path: str | Path = ":memory:",
        tables: Iterable[TableSchema] = DEFAULT_TABLES,
    ) -> SQLiteDatabase:
        """Create and initialize the database."""
        database = cls(db_path, tables)
        await database.initialize()
        return database

    async def initialize(self) -> None:
        """Open the connection and create tables and indices."""
        if self._initialized:
            return

        if str(self.db_path) != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

        try:
            self.conn = await aiosqlite.connect(str(self.db_path))
            self.conn.row_factory = sqlite3.Row
            await self.conn.execute("PRAGMA journal_mode = WAL")

            for schema in self.tables.values():
                await self._create_table(schema)

            await self.conn.commit()
            self._initialized = True
            logger.info(f"SQLite store initialized: {self.db_path}")
        except (sqlite3.Error, OSError) as e:
            raise StoreError("initialize", str(self.db_path), e) from e

    async def _create_table(self, schema: TableSchema) -> None:
        assert self.conn is not None
        columns = [f"{schema.key_field} TEXT NOT NULL PRIMARY KEY"]
        columns += [f"{name}" for name in schema.indexes]
        columns.append("doc TEXT NOT NULL")
        if schema.blob_field:
            columns.append(f"{schema.blob_field} BLOB")

        await self.conn.execute(f"CREATE TABLE IF NOT EXISTS {schema.name} ({', '.join(columns)})")
        for name in schema.indexes:
            await self.conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{schema.name}_{name} ON {schema.name}({name})"
            )

    def table(self, name_or_schema: str | TableSchema) -> SQLiteStore:
        """Get a store bound to one table."""
        name = name_or_schema if isinstance(name_or_schema, str) else name_or_schema.name
        if name not in self.tables:
            raise ValueError(f"Unknown table: {name}")
        return SQLiteStore(self, self.tables[name])

    async def close(self) -> None:
        """Close the SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    async def __aenter__(self) -> SQLiteDatabase:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class SQLiteStore(RecordStore):
    """Record store bound to one table of a :class:`SQLiteDatabase`."""

    def __init__(self, database: SQLiteDatabase, schema: TableSchema):
        self.database = database
        self.schema = schema

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self.database.conn is None:
            raise StoreError("query", self.schema.name, RuntimeError("database is not initialized"))
        return self.database.conn

    def _columns(self) -> list[str]:
        columns = [self.schema.key_field, *self.schema.indexes, "doc"]
        if self.schema.blob_field:
            columns.append(self.schema.blob_field)
        return columns

    def _to_row(self, record: Record) -> tuple[Any, ...]:
        key = record.get(self.schema.key_field)
        if key is None:
            raise ValueError(f"Record missing key field '{self.schema.key_field}'")

        doc = {k: v for k, v in record.items() if k != self.schema.blob_field}
        try:
            doc_json = json.dumps(doc)
        except (TypeError, ValueError) as e:
            raise StoreError("serialize", self.schema.name, e) from e

        row: list[Any] = [str(key), *(record.get(name) for name in self.schema.indexes), doc_json]
        if self.schema.blob_field:
            row.append(record.get(self.schema.blob_field))
        return tuple(row)

    def _from_row(self, row: sqlite3.Row) -> Record:
        record = json.loads(row["doc"])
        if self.schema.blob_field:
            blob = row[self.schema.blob_field]
            record[self.schema.blob_field] = bytes(blob) if blob is not None else None
        return record

    def _order_clause(self, order_by: str | None, descending: bool) -> str:
        direction = "DESC" if descending else "ASC"
        if order_by is None:
            return f" ORDER BY rowid {direction}"
        self.schema.check_field(order_by)
        # rowid survives upserts, so it is the insertion-order tie-breaker
        return f" ORDER BY {order_by} {direction}, rowid {direction}"

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[Record]:
        try:
            async with self._conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise StoreError("query", self.schema.name, e) from e
        return [self._from_row(row) for row in rows]

    async def _upsert(self, records: Iterable[Record]) -> None:
        columns = self._columns()
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != self.schema.key_field)
        sql = (
            f"INSERT INTO {self.schema.name} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT({self.schema.key_field}) DO UPDATE SET {updates}"
        )
        rows = [self._to_row(r) for r in records]
        async with self.database.lock:
            try:
                await self._conn.executemany(sql, rows)
                await self._conn.commit()
            except sqlite3.Error as e:
                await self._conn.rollback()
                raise StoreError("put", self.schema.name, e) from e

    async def _delete_where(self, where: str, params: tuple[Any, ...]) -> int:
        async with self.database.lock:
            try:
                cursor = await self._conn.execute(f"DELETE FROM {self.schema.name} WHERE {where}", params)
                await self._conn.commit()
            except sqlite3.Error as e:
                await self._conn.rollback()
                raise StoreError("delete", self.schema.name, e) from e
        return cursor.rowcount

    async def put(self, record: Record) -> None:
        await self._upsert([record])

    async def bulk_put(self, records: Iterable[Record]) -> None:
        records = list(records)
        if records:
            await self._upsert(records)

    async def get(self, key: str) -> Record | None:
        rows = await self._fetch(
            f"SELECT * FROM {self.schema.name} WHERE {self.schema.key_field} = ?", (key,)
        )
        return rows[0] if rows else None

    async def delete(self, key: str) -> bool:
        return await self._delete_where(f"{self.schema.key_field} = ?", (key,)) > 0

    async def query_by_index(
        self,
        field_name: str,
        value: Any,
        order_by: str | None = "created_at",
        descending: bool = False,
    ) -> list[Record]:
        self.schema.check_field(field_name)
        sql = f"SELECT * FROM {self.schema.name} WHERE {field_name} = ?"
        return await self._fetch(sql + self._order_clause(order_by, descending), (value,))

    async def all(self, order_by: str | None = None, descending: bool = False) -> list[Record]:
        sql = f"SELECT * FROM {self.schema.name}"
        return await self._fetch(sql + self._order_clause(order_by, descending))

    async def count_by_index(self, field_name: str, value: Any) -> int:
        self.schema.check_field(field_name)
        try:
            async with self._conn.execute(
                f"SELECT COUNT(*) FROM {self.schema.name} WHERE {field_name} = ?", (value,)
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError("count", self.schema.name, e) from e
        return int(row[0]) if row else 0

    async def delete_by_index(self, field_name: str, value: Any) -> int:
        self.schema.check_field(field_name)
        return await self._delete_where(f"{field_name} = ?", (value,))

    async def delete_below(self, field_name: str, bound: Any) -> int:
        self.schema.check_field(field_name)
        return await self._delete_where(f"{field_name} IS NOT NULL AND {field_name} < ?", (bound,))

    async def claim(self, key: str, predicate: ClaimPredicate, updates: Record) -> Record | None:
        async with self.database.lock:
            rows = await self._fetch(
                f"SELECT * FROM {self.schema.name} WHERE {self.schema.key_field} = ?", (key,)
            )
            if not rows or not predicate(rows[0]):
                return None

            record = {**rows[0], **updates}
            columns = self._columns()
            assignments = ", ".join(f"{c} = ?" for c in columns if c != self.schema.key_field)
            row = self._to_row(record)
            try:
                await self._conn.execute(
                    f"UPDATE {self.schema.name} SET {assignments} WHERE {self.schema.key_field} = ?",
                    (*row[1:], row[0]),
                )
                await self._conn.commit()
            except sqlite3.Error as e:
                await self._conn.rollback()
                raise StoreError("claim", self.schema.name, e) from e
            return record

    async def clear(self) -> int:
        return await self._delete_where("1 = 1", ())
