"""
Operation queue for offline create/update/delete mutations.

Mutations are persisted as soon as they are enqueued and dispatched to the
remote API when the coordinator runs a pass:

    pending --(success)--------------------> synced   [terminal]
    pending --(failure, attempts < max)----> pending  [retry after backoff]
    pending --(failure, attempts == max)---> error    [terminal]
    pending --(precondition/programmer)----> error    [terminal, no attempt consumed]
    error   --(manual reset)---------------> pending

Processing never raises to its caller; every outcome is recorded on the
operation and surfaced through the query methods. Outcomes are written back
only while the processor still holds the ``claimed_at`` claim, so an
operation deleted or reset mid-dispatch stays deleted or reset.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ..config import QueueConfig
from ..exceptions import (
    TERMINAL_ERRORS,
    OfflineSyncError,
    PreconditionError,
    ProgrammerError,
    RecordNotFoundError,
    RejectedError,
)
from ..logging_utils import SyncLoggerAdapter
from ..models import OperationStatus, OperationType, QueueStats, SyncOperation
from ..remote.base import RemoteAPI, classify_error
from ..store.base import Record, RecordStore
from ..utils import Clock, format_timestamp, new_id, parse_timestamp, utc_now
from .pool import run_pool

logger = logging.getLogger(__name__)


class Outcome(Enum):
    """Result of processing one queue item."""

    SUCCEEDED = "succeeded"
    RETRY = "retry"  # failed, will be retried after backoff
    FAILED = "failed"  # failed, terminal
    SKIPPED = "skipped"  # claimed elsewhere or no longer ready


class OperationQueue:
    """Durable FIFO queue of mutations awaiting synchronization.

    Example:
        >>> queue = OperationQueue(store, remote)
        >>> op_id = await queue.enqueue("create", "secrets", {"title": "Gmail"})
        >>> stats = await queue.process()
        >>> stats.succeeded
        1
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteAPI,
        config: QueueConfig | None = None,
        clock: Clock = utc_now,
        name: str = "operations",
    ):
        """Initialize the queue.

        Args:
            store: Store bound to the operations table
            remote: Remote API to dispatch to
            config: Retry / concurrency settings
            clock: Time source (injectable for tests)
            name: Queue name used in log context
        """
        self.store = store
        self.remote = remote
        self.config = config or QueueConfig()
        self.backoff = self.config.backoff()
        self.clock = clock
        self.name = name
        self.log = SyncLoggerAdapter(logger, {"queue": name})

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        type: OperationType | str,
        entity: str,
        payload: dict[str, Any],
    ) -> str:
        """Add a mutation to the queue.

        Args:
            type: create, update or delete
            entity: Target kind, mapped to an API endpoint
            payload: Request body; update/delete need ``payload["id"]``

        Returns:
            ID of the queued operation

        Raises:
            ProgrammerError: If the operation type is unknown
        """
        try:
            op_type = type if isinstance(type, OperationType) else OperationType(type)
        except ValueError:
            raise ProgrammerError(f"Unknown operation type: {type}") from None
        if not entity:
            raise ProgrammerError("Operation entity must not be empty")

        operation = SyncOperation(
            id=new_id(),
            type=op_type,
            entity=entity,
            payload=dict(payload),
            created_at=self.clock(),
        )
        await self.store.put(operation.to_dict())
        self.log.debug(f"Enqueued {op_type.value} {entity} operation {operation.id}")
        return operation.id

    async def get(self, operation_id: str) -> SyncOperation | None:
        record = await self.store.get(operation_id)
        return SyncOperation.from_dict(record) if record else None

    def _decode(self, records: list[Record]) -> list[SyncOperation]:
        """Convert stored records, skipping rows that no longer decode."""
        operations = []
        for record in records:
            try:
                operations.append(SyncOperation.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                self.log.warning(
                    f"Skipping undecodable operation {record.get('id')!r}: "
                    f"{e.__class__.__name__}: {e}"
                )
        return operations

    async def list_pending(self) -> list[SyncOperation]:
        """All pending operations, oldest first (including ones in backoff)."""
        records = await self.store.query_by_index("status", OperationStatus.PENDING.value)
        return self._decode(records)

    async def list_ready(self) -> list[SyncOperation]:
        """Pending operations eligible for dispatch now, oldest first."""
        now = self.clock()
        return [
            op
            for op in await self.list_pending()
            if not self._is_claimed(op.claimed_at, now)
            and self.backoff.is_ready(op.attempts, op.last_attempt_at, now)
        ]

    async def list_failed(self) -> list[SyncOperation]:
        """Operations in terminal error, oldest first."""
        records = await self.store.query_by_index("status", OperationStatus.ERROR.value)
        return self._decode(records)

    async def list_synced(self) -> list[SyncOperation]:
        records = await self.store.query_by_index("status", OperationStatus.SYNCED.value)
        return self._decode(records)

    async def next_retry_at(self) -> datetime | None:
        """Earliest time a pending operation becomes ready, None if none will."""
        now = self.clock()
        times = [
            self.backoff.next_attempt_at(op.attempts, op.last_attempt_at, now)
            for op in await self.list_pending()
        ]
        return min((t for t in times if t is not None), default=None)

    async def pending_count(self) -> int:
        return await self.store.count_by_index("status", OperationStatus.PENDING.value)

    async def failed_count(self) -> int:
        return await self.store.count_by_index("status", OperationStatus.ERROR.value)

    async def delete(self, operation_id: str) -> bool:
        """Remove an operation regardless of status (manual cleanup)."""
        return await self.store.delete(operation_id)

    async def reset(self, operation_id: str) -> SyncOperation:
        """Manually move an operation back to pending with a fresh retry budget.

        Raises:
            RecordNotFoundError: If the operation does not exist
        """
        record = await self.store.get(operation_id)
        if record is None:
            raise RecordNotFoundError(operation_id, self.store.schema.name)

        operation = SyncOperation.from_dict(record)
        operation.status = OperationStatus.PENDING
        operation.attempts = 0
        operation.last_attempt_at = None
        operation.error = None
        operation.claimed_at = None
        await self.store.put(operation.to_dict())
        self.log.info(f"Operation {operation_id} reset to pending")
        return operation

    async def retry_failed(self) -> int:
        """Reset every operation in terminal error. Returns count."""
        failed = await self.list_failed()
        for operation in failed:
            await self.reset(operation.id)
        return len(failed)

    async def clear_completed(self) -> int:
        """Delete synced operations. Returns count."""
        count = await self.store.delete_by_index("status", OperationStatus.SYNCED.value)
        if count:
            self.log.info(f"Cleared {count} synced operations")
        return count

    async def recover(self) -> int:
        """Release in-flight claims left behind by an interrupted pass."""
        released = 0
        for operation in await self.list_pending():
            if operation.claimed_at is None:
                continue
            if await self._write_back(operation, format_timestamp(operation.claimed_at)):
                released += 1
        if released:
            self.log.warning(f"Released {released} abandoned operation claims")
        return released

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self) -> QueueStats:
        """Process every ready operation, oldest first.

        Returns:
            Statistics about this pass
        """
        ready = await self.list_ready()
        if not ready:
            return QueueStats()

        self.log.info(f"Processing {len(ready)} ready operations")
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
            f"Operation pass finished: {stats.succeeded} succeeded, "
            f"{stats.failed} failed, {stats.pending} pending"
        )
        return stats

    async def process_one(self, operation: SyncOperation) -> bool:
        """Dispatch a single operation and record the outcome.

        Returns:
            True if the operation synced
        """
        return await self._process(operation) is Outcome.SUCCEEDED

    async def _process(self, operation: SyncOperation) -> Outcome:
        claimed = await self._claim(operation)
        if claimed is None:
            self.log.debug(f"Operation {operation.id} skipped (claimed or no longer pending)")
            return Outcome.SKIPPED

        stamp = format_timestamp(claimed.claimed_at)
        try:
            await self._dispatch(claimed)
        except asyncio.CancelledError:
            await self._write_back(claimed, stamp)
            raise
        except Exception as exc:
            return await self._record_failure(claimed, stamp, classify_error(exc))

        claimed.status = OperationStatus.SYNCED
        claimed.error = None
        if await self._write_back(claimed, stamp):
            self.log.debug(f"Operation {claimed.id} synced")
        return Outcome.SUCCEEDED

    async def _dispatch(self, operation: SyncOperation) -> None:
        if operation.type is OperationType.CREATE:
            await self.remote.create(operation.entity, operation.payload)
        elif operation.type is OperationType.UPDATE:
            target = self._require_target(operation)
            await self.remote.update(operation.entity, target, operation.payload)
        elif operation.type is OperationType.DELETE:
            target = self._require_target(operation)
            await self.remote.delete(operation.entity, target)
        else:
            raise ProgrammerError(f"Unknown operation type: {operation.type}")

    @staticmethod
    def _require_target(operation: SyncOperation) -> str:
        target = operation.target_id
        if not target:
            raise PreconditionError(
                f"{operation.type.value.capitalize()} operation requires {operation.entity} ID",
                field="id",
            )
        return target

    def _is_terminal(self, error: OfflineSyncError) -> bool:
        if isinstance(error, TERMINAL_ERRORS):
            return True
        return isinstance(error, RejectedError) and not self.config.retry_rejected

    async def _record_failure(
        self,
        operation: SyncOperation,
        stamp: str | None,
        error: OfflineSyncError,
    ) -> Outcome:
        operation.error = error.message
        operation.last_attempt_at = self.clock()

        if self._is_terminal(error):
            operation.status = OperationStatus.ERROR
            if not await self._write_back(operation, stamp):
                return Outcome.SKIPPED
            if isinstance(error, ProgrammerError):
                self.log.error(f"Operation {operation.id} cannot be processed: {error.message}")
            else:
                self.log.warning(
                    f"Operation {operation.id} failed permanently "
                    f"({error.__class__.__name__}): {error.message}"
                )
            return Outcome.FAILED

        operation.attempts += 1
        if self.backoff.is_exhausted(operation.attempts):
            operation.status = OperationStatus.ERROR
            if not await self._write_back(operation, stamp):
                return Outcome.SKIPPED
            self.log.warning(
                f"Operation {operation.id} failed after {operation.attempts} attempts: {error.message}"
            )
            return Outcome.FAILED

        if not await self._write_back(operation, stamp):
            return Outcome.SKIPPED
        self.log.warning(
            "Operation %s failed, attempt=%d/%d delay=%.1fs: %s",
            operation.id,
            operation.attempts,
            self.backoff.max_attempts,
            self.backoff.delay(operation.attempts),
            error.message,
        )
        return Outcome.RETRY

    # ------------------------------------------------------------------
    # In-flight claims
    # ------------------------------------------------------------------

    def _is_claimed(self, claimed_at: Any, now: Any) -> bool:
        claimed = parse_timestamp(claimed_at)
        if claimed is None:
            return False
        return now - claimed < timedelta(seconds=self.config.claim_timeout)

    async def _claim(self, operation: SyncOperation) -> SyncOperation | None:
        now = self.clock()

        def claimable(record: Record) -> bool:
            return (
                record.get("status") == OperationStatus.PENDING.value
                and not self._is_claimed(record.get("claimed_at"), now)
            )

        record = await self.store.claim(
            operation.id, claimable, {"claimed_at": format_timestamp(now)}
        )
        return SyncOperation.from_dict(record) if record else None

    async def _write_back(self, operation: SyncOperation, stamp: str | None) -> bool:
        """Store the outcome and release the claim, if the claim is still ours.

        An operation deleted or reset while in flight keeps its current
        state; the outcome is dropped.
        """
        operation.claimed_at = None

        def still_claimed(record: Record) -> bool:
            return record.get("claimed_at") == stamp

        record = await self.store.claim(operation.id, still_claimed, operation.to_dict())
        if record is None:
            self.log.info(f"Operation {operation.id} changed while in flight, outcome dropped")
            return False
        return True
