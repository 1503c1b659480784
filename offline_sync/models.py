"""
Data models for queued operations, uploads and cached responses.

Every record converts to and from a plain dict for persistence. Timestamps
are stored as fixed-width UTC ISO-8601 strings so that lexical ordering in
the store matches chronological ordering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .utils import format_timestamp, parse_timestamp, utc_now


class OperationType(Enum):
    """Type of mutation being queued."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(Enum):
    """Sync status of a queued operation."""

    PENDING = "pending"
    SYNCED = "synced"  # terminal
    ERROR = "error"  # terminal until manual reset


class UploadState(Enum):
    """Upload state of a queued file."""

    PENDING = "pending"
    ENCRYPTED = "encrypted"  # staged locally, ready to upload
    UPLOADING = "uploading"  # transient, never a rest state
    COMPLETED = "completed"
    FAILED = "failed"


# Upload states eligible for processing
UPLOAD_READY_STATES = (UploadState.PENDING, UploadState.ENCRYPTED)


@dataclass
class SyncOperation:
    """A create/update/delete mutation waiting to reach the remote API.

    Attributes:
        id: Unique identifier for this operation
        type: Mutation type
        entity: Target kind (e.g. "secret"), mapped to an API endpoint
        payload: Request body; update/delete carry the target id in ``payload["id"]``
        status: Current sync status
        attempts: Number of failed attempts
        created_at: When the operation was enqueued
        last_attempt_at: When the last failed attempt happened
        error: Last error message
        claimed_at: Set while a processor is dispatching this operation
    """

    id: str
    type: OperationType
    entity: str
    payload: dict[str, Any]
    status: OperationStatus = OperationStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utc_now)
    last_attempt_at: datetime | None = None
    error: str | None = None
    claimed_at: datetime | None = None

    @property
    def target_id(self) -> str | None:
        target = self.payload.get("id") if isinstance(self.payload, dict) else None
        return str(target) if target else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence."""
        return {
            "id": self.id,
            "type": self.type.value,
            "entity": self.entity,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": format_timestamp(self.created_at),
            "last_attempt_at": format_timestamp(self.last_attempt_at),
            "error": self.error,
            "claimed_at": format_timestamp(self.claimed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncOperation:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            type=OperationType(data["type"]),
            entity=data["entity"],
            payload=data.get("payload") or {},
            status=OperationStatus(data.get("status", "pending")),
            attempts=data.get("attempts", 0),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            last_attempt_at=parse_timestamp(data.get("last_attempt_at")),
            error=data.get("error"),
            claimed_at=parse_timestamp(data.get("claimed_at")),
        )


@dataclass
class FileMetadata:
    """Descriptive metadata for a queued file."""

    name: str
    type: str
    size: int
    timestamp: float  # epoch seconds when the file was captured

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "size": self.size, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileMetadata:
        return cls(
            name=data["name"],
            type=data.get("type", "application/octet-stream"),
            size=int(data.get("size", 0)),
            timestamp=float(data.get("timestamp", 0)),
        )


@dataclass
class UploadEntry:
    """A binary payload waiting to be uploaded.

    The entry owns ``blob`` exclusively. After staging (e.g. client-side
    encryption) ``blob`` holds the staged bytes, ``staged`` is set and the
    entry rests in ``ENCRYPTED`` between attempts, so retries never restage.
    """

    id: str
    blob: bytes
    metadata: FileMetadata
    upload_state: UploadState = UploadState.PENDING
    target_id: str | None = None
    target_entity: str | None = None
    staged: bool = False
    retry_count: int = 0
    checksum: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    last_attempt_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "blob": self.blob,
            "metadata": self.metadata.to_dict(),
            "upload_state": self.upload_state.value,
            "target_id": self.target_id,
            "target_entity": self.target_entity,
            "staged": self.staged,
            "retry_count": self.retry_count,
            "checksum": self.checksum,
            "error": self.error,
            "created_at": format_timestamp(self.created_at),
            "last_attempt_at": format_timestamp(self.last_attempt_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadEntry:
        return cls(
            id=data["id"],
            blob=bytes(data.get("blob") or b""),
            metadata=FileMetadata.from_dict(data["metadata"]),
            upload_state=UploadState(data.get("upload_state", "pending")),
            target_id=data.get("target_id"),
            target_entity=data.get("target_entity"),
            staged=bool(data.get("staged", False)),
            retry_count=data.get("retry_count", 0),
            checksum=data.get("checksum"),
            error=data.get("error"),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            last_attempt_at=parse_timestamp(data.get("last_attempt_at")),
        )


@dataclass
class CacheEntry:
    """A cached API response."""

    key: str
    payload: Any
    cached_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "payload": self.payload,
            "cached_at": format_timestamp(self.cached_at),
            "expires_at": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=data["key"],
            payload=data.get("payload"),
            cached_at=parse_timestamp(data["cached_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
        )


@dataclass
class QueueStats:
    """Result of one processing pass over a queue."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0  # failed this pass (retryable or terminal)
    pending: int = 0  # still waiting for a later pass
    retrying: int = 0  # failed transiently, scheduled for retry after backoff

    @property
    def processed(self) -> int:
        return self.total

    def merge(self, other: QueueStats) -> QueueStats:
        return QueueStats(
            total=self.total + other.total,
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
            pending=self.pending + other.pending,
            retrying=self.retrying + other.retrying,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
            "retrying": self.retrying,
        }


@dataclass
class SyncReport:
    """Aggregated result of a coordinator pass, broadcast to observers."""

    trigger: str
    operations: QueueStats = field(default_factory=QueueStats)
    uploads: QueueStats = field(default_factory=QueueStats)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    transient_failures: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.operations.failed == 0 and self.uploads.failed == 0 and not self.errors

    @property
    def duration_ms(self) -> int:
        if self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "operations": self.operations.to_dict(),
            "uploads": self.uploads.to_dict(),
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "transient_failures": self.transient_failures,
            "errors": list(self.errors),
            "success": self.success,
        }
