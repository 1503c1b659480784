"""
Trigger coordinator.

Owns every source that can start a sync pass and makes sure only one pass
runs at a time:

- Connectivity: offline -> online transition
- Timer: every ``sync_interval`` seconds while started
- Background: platform-registered sync tags (e.g. a service worker or
  OS background task), only while a client session is active
- Manual: ``process_now`` (explicit user retry, runs even while offline)

A pass processes the operation queue, then the upload queue, and broadcasts
a :class:`SyncReport` to observers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from .config import SyncConfig
from .connectivity import ConnectivityMonitor
from .exceptions import OfflineSyncError, TransientError
from .logging_utils import SyncLoggerAdapter
from .models import QueueStats, SyncReport
from .queues.operations import OperationQueue
from .queues.uploads import UploadQueue
from .utils import Clock, format_timestamp, utc_now

logger = logging.getLogger(__name__)

ReportObserver = Callable[[SyncReport], Any]


class TriggerSource(Enum):
    """What started a sync pass."""

    CONNECTIVITY = "connectivity"
    TIMER = "timer"
    BACKGROUND = "background"
    MANUAL = "manual"


class TriggerCoordinator:
    """Single owner of all sync triggers.

    Example:
        >>> coordinator = TriggerCoordinator(operations, uploads, connectivity, config)
        >>> await coordinator.start()
        >>> report = await coordinator.process_now()
        >>> await coordinator.stop()
    """

    def __init__(
        self,
        operations: OperationQueue,
        uploads: UploadQueue,
        connectivity: ConnectivityMonitor,
        config: SyncConfig | None = None,
        active_clients: Callable[[], int] | None = None,
        clock: Clock = utc_now,
    ):
        """Initialize the coordinator.

        Args:
            operations: Queue of pending mutations
            uploads: Queue of pending file uploads
            connectivity: Online/offline state source
            config: Sync configuration
            active_clients: Returns the number of open client sessions
                (default: always one, for in-process hosts)
            clock: Time source (injectable for tests)
        """
        self.operations = operations
        self.uploads = uploads
        self.connectivity = connectivity
        self.config = config or SyncConfig()
        self.clock = clock
        self._active_clients = active_clients or (lambda: 1)

        self._lock = asyncio.Lock()
        self._observers: list[ReportObserver] = []
        self._background_tags: set[str] = set()
        self._timer_task: asyncio.Task[None] | None = None
        self._trigger_tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe_connectivity: Callable[[], None] | None = None
        self._last_report: SyncReport | None = None

    @property
    def is_running(self) -> bool:
        """True while a pass is in progress."""
        return self._lock.locked()

    @property
    def last_report(self) -> SyncReport | None:
        return self._last_report

    @property
    def background_tags(self) -> frozenset[str]:
        return frozenset(self._background_tags)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover interrupted work and start listening for triggers."""
        if self._timer_task is not None:
            return

        await self.operations.recover()
        await self.uploads.recover()

        for tag in self.config.background_tags:
            self.register_background_trigger(tag)

        self._unsubscribe_connectivity = self.connectivity.on_transition(self._on_connectivity)

        async def sync_loop() -> None:
            while True:
                try:
                    await asyncio.sleep(self.config.sync_interval)
                    await self._run(TriggerSource.TIMER, require_online=True)
                except asyncio.CancelledError:
                    break
                except Exception:
                    logger.exception("Periodic sync pass failed")

        self._timer_task = asyncio.create_task(sync_loop())
        logger.info(f"Sync coordinator started (interval {self.config.sync_interval}s)")

    async def stop(self) -> None:
        """Stop the timer and wait for in-flight trigger passes to finish."""
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None

        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._trigger_tasks:
            await asyncio.gather(*self._trigger_tasks, return_exceptions=True)
        logger.info("Sync coordinator stopped")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        if not online:
            return
        logger.info("Back online, scheduling sync pass")
        task = asyncio.get_running_loop().create_task(
            self._run(TriggerSource.CONNECTIVITY, require_online=True)
        )
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)

    def register_background_trigger(self, tag: str) -> None:
        """Record a platform background-sync tag this coordinator answers to."""
        self._background_tags.add(tag)
        logger.debug(f"Registered background trigger: {tag}")

    async def handle_background_trigger(self, tag: str) -> SyncReport | None:
        """Run a pass for a platform background-sync event.

        Returns:
            The report, or None if the pass was skipped

        Raises:
            TransientError: If items were left pending by transient failures,
                so the platform reschedules the trigger
        """
        if tag not in self._background_tags:
            logger.debug(f"Ignoring unregistered background trigger: {tag}")
            return None

        if self._active_clients() < 1:
            logger.debug(f"No active clients, skipping background trigger {tag}")
            return None

        report = await self._run(TriggerSource.BACKGROUND, require_online=True)
        if report is not None and report.transient_failures:
            raise TransientError(
                f"Background sync '{tag}' left {report.transient_failures} items pending retry"
            )
        return report

    async def process_now(self) -> SyncReport | None:
        """Run a pass immediately, even while offline.

        Returns:
            The report, or None if a pass was already running
        """
        return await self._run(TriggerSource.MANUAL, require_online=False)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: ReportObserver) -> Callable[[], None]:
        """Register a callback receiving every SyncReport.

        Returns:
            Function that removes the callback
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    async def _notify(self, report: SyncReport) -> None:
        for callback in list(self._observers):
            try:
                result = callback(report)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Sync observer failed")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _run(self, source: TriggerSource, require_online: bool) -> SyncReport | None:
        log = SyncLoggerAdapter(logger, {"trigger": source.value})

        if require_online and not self.connectivity.is_online:
            log.debug("Offline, skipping sync pass")
            return None

        if self._lock.locked():
            log.info("Sync pass already running, trigger ignored")
            return None

        async with self._lock:
            report = SyncReport(trigger=source.value, started_at=self.clock())
            report.operations = await self._process_queue(self.operations.process, report, log)
            report.uploads = await self._process_queue(self.uploads.process, report, log)
            report.transient_failures += report.operations.retrying + report.uploads.retrying
            report.finished_at = self.clock()
            self._last_report = report

        log.info(
            f"Sync pass finished: operations {report.operations.succeeded}/{report.operations.total}, "
            f"uploads {report.uploads.succeeded}/{report.uploads.total}, "
            f"{report.transient_failures} pending retry"
        )
        await self._notify(report)
        return report

    async def _process_queue(
        self,
        process: Callable[[], Any],
        report: SyncReport,
        log: SyncLoggerAdapter,
    ) -> QueueStats:
        try:
            return await process()
        except OfflineSyncError as e:
            log.error(f"Queue pass failed: {e.message}", exc_info=True)
            report.errors.append(e.message)
            if isinstance(e, TransientError):
                report.transient_failures += 1
        except Exception as e:
            log.exception("Queue pass failed unexpectedly")
            report.errors.append(f"{e.__class__.__name__}: {e}")
        return QueueStats()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        """Queue counts plus coordinator state."""
        return {
            "operations": {
                "pending": await self.operations.pending_count(),
                "failed": await self.operations.failed_count(),
                "next_retry_at": format_timestamp(await self.operations.next_retry_at()),
            },
            "uploads": {
                "pending": await self.uploads.pending_count(),
                "failed": await self.uploads.failed_count(),
                "next_retry_at": format_timestamp(await self.uploads.next_retry_at()),
            },
            "is_running": self.is_running,
            "is_online": self.connectivity.is_online,
            "timer_active": self._timer_task is not None,
            "background_tags": sorted(self._background_tags),
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }
