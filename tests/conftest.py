"""
Shared test configuration and fixtures.

Provides a controllable clock, a mock remote API that records calls and can
be scripted to fail, and queue fixtures backed by in-memory or SQLite stores.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from offline_sync.config import QueueConfig
from offline_sync.connectivity import ConnectivityMonitor
from offline_sync.models import UploadEntry
from offline_sync.queues import OperationQueue, UploadQueue
from offline_sync.remote.base import RemoteAPI
from offline_sync.store import (
    CACHE_TABLE,
    OPERATIONS_TABLE,
    UPLOADS_TABLE,
    MemoryStore,
    SQLiteDatabase,
)

logger = logging.getLogger(__name__)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class MockRemoteAPI(RemoteAPI):
    """
    Mock remote API for testing without a backend.

    Records every call. Errors queued in ``errors`` are raised one per call
    (in order); ``fail_with`` is raised on every call once the queue is empty.
    """

    def __init__(self, upload_delay: float = 0.0):
        self.calls: list[tuple[Any, ...]] = []
        self.errors: list[BaseException] = []
        self.fail_with: BaseException | None = None
        self.upload_delay = upload_delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)
        if self.fail_with is not None:
            raise self.fail_with

    async def create(self, entity: str, payload: dict[str, Any]) -> Any:
        self.calls.append(("create", entity, dict(payload)))
        self._maybe_fail()
        return {"id": payload.get("id", "remote-1"), **payload}

    async def update(self, entity: str, record_id: str, payload: dict[str, Any]) -> Any:
        self.calls.append(("update", entity, record_id, dict(payload)))
        self._maybe_fail()
        return payload

    async def delete(self, entity: str, record_id: str) -> Any:
        self.calls.append(("delete", entity, record_id))
        self._maybe_fail()
        return None

    async def upload(self, entry: UploadEntry, checksum: str | None) -> Any:
        self.calls.append(("upload", entry.id, entry.blob, checksum))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.upload_delay)
            self._maybe_fail()
        finally:
            self.in_flight -= 1
        return {"id": entry.id}

    async def close(self) -> None:
        self.closed = True

    def calls_of(self, kind: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == kind]


@pytest.fixture
def clock():
    """Fake clock starting at a fixed UTC instant."""
    return FakeClock()


@pytest.fixture
def remote():
    return MockRemoteAPI()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(initial=True)


@pytest.fixture
def operation_store():
    return MemoryStore(OPERATIONS_TABLE)


@pytest.fixture
def upload_store():
    return MemoryStore(UPLOADS_TABLE)


@pytest.fixture
def cache_store():
    return MemoryStore(CACHE_TABLE)


@pytest.fixture
async def sqlite_db():
    """Initialized in-memory SQLite database with all queue tables."""
    database = await SQLiteDatabase.create(":memory:")
    yield database
    await database.close()


@pytest.fixture
def operation_queue(operation_store, remote, clock):
    return OperationQueue(operation_store, remote, QueueConfig(), clock=clock)


@pytest.fixture
def upload_queue(upload_store, remote, clock):
    return UploadQueue(upload_store, remote, QueueConfig(concurrency=3), clock=clock)
