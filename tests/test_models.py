"""Tests for persisted models and run statistics."""

from datetime import UTC, datetime, timedelta

from offline_sync.models import (
    CacheEntry,
    FileMetadata,
    OperationStatus,
    OperationType,
    QueueStats,
    SyncOperation,
    SyncReport,
    UploadEntry,
    UploadState,
)

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)


class TestSyncOperation:
    """Tests for operation records."""

    def test_dict_round_trip(self):
        """Operations survive conversion to and from dicts."""
        operation = SyncOperation(
            id="op-1",
            type=OperationType.UPDATE,
            entity="secrets",
            payload={"id": "s1", "title": "x"},
            status=OperationStatus.ERROR,
            attempts=2,
            created_at=NOW,
            last_attempt_at=NOW + timedelta(seconds=5),
            error="boom",
        )
        assert SyncOperation.from_dict(operation.to_dict()) == operation

    def test_timestamps_sort_lexically(self):
        """Serialized timestamps order the same as the datetimes."""
        early = SyncOperation(id="a", type=OperationType.CREATE, entity="e", payload={}, created_at=NOW)
        late = SyncOperation(
            id="b", type=OperationType.CREATE, entity="e", payload={}, created_at=NOW + timedelta(microseconds=1)
        )
        assert early.to_dict()["created_at"] < late.to_dict()["created_at"]

    def test_target_id(self):
        """The target id comes from the payload."""
        operation = SyncOperation(id="a", type=OperationType.DELETE, entity="e", payload={"id": 42})
        assert operation.target_id == "42"
        assert SyncOperation(id="b", type=OperationType.DELETE, entity="e", payload={}).target_id is None


class TestUploadEntry:
    """Tests for upload records."""

    def test_dict_round_trip(self):
        """Entries keep blob, metadata and staging state."""
        entry = UploadEntry(
            id="f1",
            blob=b"\x00\x01",
            metadata=FileMetadata(name="a.bin", type="application/octet-stream", size=2, timestamp=1.5),
            upload_state=UploadState.ENCRYPTED,
            target_id="s1",
            staged=True,
            checksum="ab" * 32,
            created_at=NOW,
        )
        assert UploadEntry.from_dict(entry.to_dict()) == entry


class TestCacheEntry:
    """Tests for cache records."""

    def test_expiry(self):
        """Entries expire at their expiry instant."""
        entry = CacheEntry(key="k", payload=1, cached_at=NOW, expires_at=NOW + timedelta(seconds=10))
        assert entry.is_expired(NOW + timedelta(seconds=9)) is False
        assert entry.is_expired(NOW + timedelta(seconds=10)) is True


class TestStats:
    """Tests for queue stats and sync reports."""

    def test_merge(self):
        """Stats add up field by field."""
        merged = QueueStats(total=2, succeeded=1, failed=1, pending=1, retrying=1).merge(
            QueueStats(total=3, succeeded=3)
        )
        assert merged == QueueStats(total=5, succeeded=4, failed=1, pending=1, retrying=1)
        assert merged.processed == 5

    def test_report(self):
        """Reports summarize both queues."""
        report = SyncReport(
            trigger="manual",
            operations=QueueStats(total=1, succeeded=1),
            started_at=NOW,
            finished_at=NOW + timedelta(milliseconds=250),
        )
        assert report.success is True
        assert report.duration_ms == 250
        assert report.to_dict()["operations"]["processed"] == 1

    def test_report_with_failures(self):
        """Any failure marks the report unsuccessful."""
        report = SyncReport(trigger="timer", uploads=QueueStats(total=1, failed=1))
        assert report.success is False
        assert report.duration_ms == 0
