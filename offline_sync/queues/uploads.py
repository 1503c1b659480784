"""
Upload queue with staged states and a bounded worker pool.

Binary payloads are persisted on enqueue and uploaded in parallel, at most
``concurrency`` at a time:

    pending --(claim, stage once)--> encrypted --(claim)--> uploading --(upload)--> completed
                                                                |
                                                                +--> encrypted / pending (retry after backoff)
                                                                +--> failed (terminal)

Staging (e.g. client-side encryption) runs once under the worker's claim.
The staged blob is stored as ``encrypted`` before the upload is claimed, so
a retry resumes from ``encrypted`` without restaging. Without a stager an
entry goes straight from ``pending`` to ``uploading``.

``uploading`` is the in-flight claim marker. Results are written back only
while that marker is still in place, so an entry deleted or reset mid-flight
is left alone. Every pass resolves the marker before returning, and
:meth:`UploadQueue.recover` puts leftovers from an interrupted run back to
``encrypted`` or ``pending``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from ..checksum import calculate_checksum
from ..config import DEFAULT_UPLOAD_CONCURRENCY, QueueConfig
from ..exceptions import (
    TERMINAL_ERRORS,
    OfflineSyncError,
    PreconditionError,
    RecordNotFoundError,
    RejectedError,
)
from ..logging_utils import SyncLoggerAdapter
from ..models import UPLOAD_READY_STATES, FileMetadata, QueueStats, UploadEntry, UploadState
from ..quota import StorageQuota, estimate_quota
from ..remote.base import RemoteAPI, classify_error
from ..store.base import Record, RecordStore
from ..utils import Clock, new_id, utc_now
from .operations import Outcome
from .pool import run_pool

logger = logging.getLogger(__name__)

# Local processing applied once before the first upload attempt
Stager = Callable[[UploadEntry], Awaitable[bytes]]


class UploadQueue:
    """Durable queue of file payloads awaiting upload.

    Example:
        >>> queue = UploadQueue(store, remote, stager=encrypt_entry)
        >>> file_id = await queue.enqueue_file(Path("report.pdf"), target_id="secret-1")
        >>> stats = await queue.process()
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteAPI,
        config: QueueConfig | None = None,
        clock: Clock = utc_now,
        stager: Stager | None = None,
        require_target: bool = False,
        quota_path: str | Path | None = None,
        quota_warning_ratio: float = 0.9,
        name: str = "uploads",
    ):
        """Initialize the queue.

        Args:
            store: Store bound to the upload table
            remote: Remote API to upload to
            config: Retry / concurrency settings (default concurrency 3)
            clock: Time source (injectable for tests)
            stager: Optional local processing step (e.g. encryption)
            require_target: Fail entries without a target_id immediately
            quota_path: Path whose filesystem backs the store, for quota checks
            quota_warning_ratio: Usage ratio above which enqueue logs a warning
            name: Queue name used in log context
        """
        self.store = store
        self.remote = remote
        self.config = config or QueueConfig(concurrency=DEFAULT_UPLOAD_CONCURRENCY)
        self.backoff = self.config.backoff()
        self.clock = clock
        self.stager = stager
        self.require_target = require_target
        self.quota_path = quota_path
        self.quota_warning_ratio = quota_warning_ratio
        self.name = name
        self.log = SyncLoggerAdapter(logger, {"queue": name})

        self._in_flight = 0
        self.max_in_flight = 0  # high-water mark of concurrent uploads

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        blob: bytes,
        metadata: FileMetadata,
        target_id: str | None = None,
        target_entity: str | None = None,
    ) -> str:
        """Add a binary payload to the upload queue.

        Args:
            blob: File content, owned by the queue from now on
            metadata: Name, type, size and capture timestamp
            target_id: Optional destination record ID
            target_entity: Kind of the destination record (e.g. "secrets")

        Returns:
            ID of the queued file
        """
        await self._check_quota(len(blob), metadata.name)

        entry = UploadEntry(
            id=new_id(),
            blob=bytes(blob),
            metadata=metadata,
            target_id=target_id,
            target_entity=target_entity,
            created_at=self.clock(),
        )
        await self.store.put(entry.to_dict())
        self.log.debug(f"Enqueued upload {entry.id}: {metadata.name} ({metadata.size} bytes)")
        return entry.id

    async def enqueue_file(
        self,
        path: str | Path,
        target_id: str | None = None,
        target_entity: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Read a file from disk and enqueue it."""
        path = Path(path)
        async with aiofiles.open(path, "rb") as f:
            blob = await f.read()
        stat = await aiofiles.os.stat(path)

        metadata = FileMetadata(
            name=path.name,
            type=content_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream",
            size=len(blob),
            timestamp=stat.st_mtime,
        )
        return await self.enqueue(blob, metadata, target_id, target_entity)

    async def quota(self) -> StorageQuota:
        """Current storage quota estimate (advisory)."""
        return await asyncio.to_thread(estimate_quota, self.quota_path)

    async def _check_quota(self, size: int, name: str) -> None:
        if self.quota_path is None:
            return
        quota = await self.quota()
        if quota.would_exceed(size, self.quota_warning_ratio):
            self.log.warning(
                f"Storage nearly full ({quota.percentage:.1f}% used); "
                f"queuing {name} adds {size} bytes"
            )

    async def get(self, entry_id: str) -> UploadEntry | None:
        record = await self.store.get(entry_id)
        return UploadEntry.from_dict(record) if record else None

    def _decode(self, records: list[Record]) -> list[UploadEntry]:
        """Convert stored records, skipping rows that no longer decode."""
        entries = []
        for record in records:
            try:
                entries.append(UploadEntry.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                self.log.warning(
                    f"Skipping undecodable upload {record.get('id')!r}: "
                    f"{e.__class__.__name__}: {e}"
                )
        return entries

    async def list_pending(self) -> list[UploadEntry]:
        """Entries waiting for upload (pending or encrypted), oldest first."""
        entries: list[UploadEntry] = []
        for state in UPLOAD_READY_STATES:
            records = await self.store.query_by_index("upload_state", state.value)
            entries.extend(self._decode(records))
        return sorted(entries, key=lambda e: e.created_at)

    async def list_ready(self) -> list[UploadEntry]:
        """Pending entries whose backoff has elapsed, oldest first."""
        now = self.clock()
        return [
            e
            for e in await self.list_pending()
            if self.backoff.is_ready(e.retry_count, e.last_attempt_at, now)
        ]

    async def next_retry_at(self) -> datetime | None:
        """Earliest time a waiting entry becomes ready, None if none will."""
        now = self.clock()
        times = [
            self.backoff.next_attempt_at(e.retry_count, e.last_attempt_at, now)
            for e in await self.list_pending()
        ]
        return min((t for t in times if t is not None), default=None)

    async def list_failed(self) -> list[UploadEntry]:
        records = await self.store.query_by_index("upload_state", UploadState.FAILED.value)
        return self._decode(records)

    async def list_completed(self) -> list[UploadEntry]:
        records = await self.store.query_by_index("upload_state", UploadState.COMPLETED.value)
        return self._decode(records)

    async def list_all(self) -> list[UploadEntry]:
        """Every entry in any state, newest first."""
        records = await self.store.all(order_by="created_at", descending=True)
        return self._decode(records)

    async def pending_count(self) -> int:
        counts = [await self.store.count_by_index("upload_state", s.value) for s in UPLOAD_READY_STATES]
        return sum(counts)

    async def failed_count(self) -> int:
        return await self.store.count_by_index("upload_state", UploadState.FAILED.value)

    async def delete(self, entry_id: str) -> bool:
        """Remove an entry regardless of state (manual cleanup)."""
        return await self.store.delete(entry_id)

    async def reset(self, entry_id: str) -> UploadEntry:
        """Manually move a failed entry back to the ready set.

        Raises:
            RecordNotFoundError: If the entry does not exist
        """
        record = await self.store.get(entry_id)
        if record is None:
            raise RecordNotFoundError(entry_id, self.store.schema.name)

        entry = UploadEntry.from_dict(record)
        entry.upload_state = self._rest_state(entry)
        entry.retry_count = 0
        entry.last_attempt_at = None
        entry.error = None
        await self.store.put(entry.to_dict())
        self.log.info(f"Upload {entry_id} reset to {entry.upload_state.value}")
        return entry

    async def retry_failed(self) -> int:
        """Reset every failed entry. Returns count."""
        failed = await self.list_failed()
        for entry in failed:
            await self.reset(entry.id)
        return len(failed)

    async def clear_completed(self) -> int:
        """Delete completed uploads. Returns count."""
        count = await self.store.delete_by_index("upload_state", UploadState.COMPLETED.value)
        if count:
            self.log.info(f"Cleared {count} completed uploads")
        return count

    async def recover(self) -> int:
        """Reconcile entries left ``uploading`` by an interrupted run."""
        records = await self.store.query_by_index("upload_state", UploadState.UPLOADING.value)
        recovered = 0
        for entry in self._decode(records):
            entry.upload_state = self._rest_state(entry)
            if await self._write_back(entry):
                recovered += 1
        if recovered:
            self.log.warning(f"Recovered {recovered} uploads interrupted mid-flight")
        return recovered

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self) -> QueueStats:
        """Upload every ready entry using the bounded worker pool.

        Returns:
            Statistics about this pass
        """
        ready = await self.list_ready()
        if not ready:
            return QueueStats()

        self.log.info(
            f"Processing {len(ready)} ready uploads with concurrency {self.config.concurrency}"
        )
        outcomes = await run_pool(ready, self._process, self.config.concurrency)

        stats = QueueStats(total=len(ready))
        for outcome in outcomes:
            if outcome is Outcome.SUCCEEDED:
                stats.succeeded += 1
            elif outcome is Outcome.RETRY:
                stats.failed += 1
                stats.pending += 1
                stats.retrying += 1
            elif outcome is Outcome.FAILED:
                stats.failed += 1
            else:
                stats.pending += 1

        self.log.info(
            f"Upload pass finished: {stats.succeeded} completed, "
            f"{stats.failed} failed, {stats.pending} pending"
        )
        return stats

    async def process_one(self, entry: UploadEntry) -> bool:
        """Upload a single entry and record the outcome.

        Returns:
            True if the upload completed
        """
        return await self._process(entry) is Outcome.SUCCEEDED

    async def _process(self, entry: UploadEntry) -> Outcome:
        claimed = await self._claim(entry)
        if claimed is None:
            self.log.debug(f"Upload {entry.id} skipped (claimed or no longer ready)")
            return Outcome.SKIPPED

        if self.require_target and not claimed.target_id:
            error = PreconditionError("Upload requires a target ID", field="target_id")
            return await self._record_failure(claimed, error)

        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            staged = await self._stage(claimed)
            if staged is None:
                return Outcome.SKIPPED
            claimed = staged
            await self.remote.upload(claimed, claimed.checksum)
        except asyncio.CancelledError:
            claimed.upload_state = self._rest_state(claimed)
            await self._write_back(claimed)
            raise
        except Exception as exc:
            return await self._record_failure(claimed, classify_error(exc))
        finally:
            self._in_flight -= 1

        claimed.upload_state = UploadState.COMPLETED
        claimed.error = None
        claimed.last_attempt_at = self.clock()
        if await self._write_back(claimed):
            self.log.debug(f"Upload {claimed.id} completed")
        return Outcome.SUCCEEDED

    async def _stage(self, entry: UploadEntry) -> UploadEntry | None:
        """Run local processing once and cache the checksum.

        A freshly staged entry is stored as ``encrypted`` and then claimed
        again for the upload itself.

        Returns:
            The entry to upload, or None if it changed while in flight
        """
        if self.stager is not None and not entry.staged:
            entry.blob = await self.stager(entry)
            entry.staged = True
            entry.checksum = calculate_checksum(entry.blob)
            entry.upload_state = UploadState.ENCRYPTED
            if not await self._write_back(entry):
                return None
            return await self._claim(entry)

        if entry.checksum is None:
            entry.checksum = calculate_checksum(entry.blob)
            if not await self._write_back(entry):
                return None
        return entry

    @staticmethod
    def _rest_state(entry: UploadEntry) -> UploadState:
        return UploadState.ENCRYPTED if entry.staged else UploadState.PENDING

    def _is_terminal(self, error: OfflineSyncError) -> bool:
        if isinstance(error, TERMINAL_ERRORS):
            return True
        return isinstance(error, RejectedError) and not self.config.retry_rejected

    async def _record_failure(self, entry: UploadEntry, error: OfflineSyncError) -> Outcome:
        entry.error = error.message
        entry.last_attempt_at = self.clock()

        if self._is_terminal(error):
            entry.upload_state = UploadState.FAILED
            if not await self._write_back(entry):
                return Outcome.SKIPPED
            self.log.warning(
                f"Upload {entry.id} ({entry.metadata.name}) failed permanently "
                f"({error.__class__.__name__}): {error.message}"
            )
            return Outcome.FAILED

        entry.retry_count += 1
        if self.backoff.is_exhausted(entry.retry_count):
            entry.upload_state = UploadState.FAILED
            if not await self._write_back(entry):
                return Outcome.SKIPPED
            self.log.warning(
                f"Upload {entry.id} ({entry.metadata.name}) failed after "
                f"{entry.retry_count} attempts: {error.message}"
            )
            return Outcome.FAILED

        entry.upload_state = self._rest_state(entry)
        if not await self._write_back(entry):
            return Outcome.SKIPPED
        self.log.warning(
            "Upload %s failed, attempt=%d/%d delay=%.1fs: %s",
            entry.id,
            entry.retry_count,
            self.backoff.max_attempts,
            self.backoff.delay(entry.retry_count),
            error.message,
        )
        return Outcome.RETRY

    async def _claim(self, entry: UploadEntry) -> UploadEntry | None:
        ready_values = {s.value for s in UPLOAD_READY_STATES}

        def claimable(record: Record) -> bool:
            return record.get("upload_state") in ready_values

        record = await self.store.claim(
            entry.id, claimable, {"upload_state": UploadState.UPLOADING.value}
        )
        return UploadEntry.from_dict(record) if record else None

    async def _write_back(self, entry: UploadEntry) -> bool:
        """Store the entry if it is still ``uploading`` under this worker's claim.

        An entry deleted or reset while in flight keeps its current state;
        the outcome is dropped.
        """

        def still_claimed(record: Record) -> bool:
            return record.get("upload_state") == UploadState.UPLOADING.value

        record = await self.store.claim(entry.id, still_claimed, entry.to_dict())
        if record is None:
            self.log.info(f"Upload {entry.id} changed while in flight, outcome dropped")
            return False
        return True
