"""
Tests for the trigger coordinator.

Timer tests use a very short interval and real sleeps; everything else
drives the coordinator through its public trigger methods.
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from offline_sync.config import SyncConfig
from offline_sync.connectivity import ConnectivityMonitor
from offline_sync.coordinator import TriggerCoordinator
from offline_sync.exceptions import StoreError, TransientError
from offline_sync.models import FileMetadata, SyncReport, UploadState
from offline_sync.utils import format_timestamp

FILE_TAG = "sync-file-queue"


def metadata(name="a.jpg"):
    return FileMetadata(name=name, type="image/jpeg", size=1, timestamp=0.0)


@pytest.fixture
def config():
    return SyncConfig(sync_interval=3600)


@pytest.fixture
def coordinator(operation_queue, upload_queue, connectivity, config, clock):
    return TriggerCoordinator(operation_queue, upload_queue, connectivity, config, clock=clock)


class TestManualTrigger:
    """Tests for process_now."""

    @pytest.mark.asyncio
    async def test_runs_operations_then_uploads(self, coordinator, operation_queue, upload_queue, remote):
        """A pass drains both queues, operations first."""
        await upload_queue.enqueue(b"x", metadata())
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        report = await coordinator.process_now()

        assert report.trigger == "manual"
        assert report.operations.succeeded == 1
        assert report.uploads.succeeded == 1
        assert report.success is True
        assert report.finished_at is not None
        assert [c[0] for c in remote.calls] == ["create", "upload"]
        assert coordinator.last_report is report

    @pytest.mark.asyncio
    async def test_runs_while_offline(self, coordinator, connectivity, operation_queue, remote):
        """An explicit retry is attempted even when offline."""
        connectivity.set_online(False)
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        report = await coordinator.process_now()

        assert report is not None
        assert len(remote.calls) == 1

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_ignored(self, coordinator, upload_queue, remote):
        """A trigger during a running pass does not start a second one."""
        remote.upload_delay = 0.05
        await upload_queue.enqueue(b"x", metadata())

        first, second = await asyncio.gather(coordinator.process_now(), coordinator.process_now())

        reports = [r for r in (first, second) if r is not None]
        assert len(reports) == 1
        assert len(remote.calls_of("upload")) == 1
        assert coordinator.is_running is False

    @pytest.mark.asyncio
    async def test_queue_error_is_reported_not_raised(self, coordinator, operation_queue, upload_queue, remote):
        """A store failure in one queue is recorded and the other queue still runs."""
        operation_queue.process = AsyncMock(side_effect=StoreError("query", "sync_operations"))
        await upload_queue.enqueue(b"x", metadata())

        report = await coordinator.process_now()

        assert report.errors == ["Store error during query: sync_operations"]
        assert report.success is False
        assert report.uploads.succeeded == 1


class TestObservers:
    """Tests for report broadcasting."""

    @pytest.mark.asyncio
    async def test_observers_receive_reports(self, coordinator):
        """Subscribed callbacks get every report."""
        received = []
        coordinator.subscribe(received.append)

        report = await coordinator.process_now()

        assert received == [report]
        assert isinstance(received[0], SyncReport)

    @pytest.mark.asyncio
    async def test_async_observer_awaited(self, coordinator):
        """Coroutine callbacks are awaited."""
        observer = AsyncMock()
        coordinator.subscribe(observer)

        report = await coordinator.process_now()
        observer.assert_awaited_once_with(report)

    @pytest.mark.asyncio
    async def test_unsubscribe(self, coordinator):
        """Removed callbacks stop receiving reports."""
        received = []
        unsubscribe = coordinator.subscribe(received.append)
        unsubscribe()

        await coordinator.process_now()
        assert received == []

    @pytest.mark.asyncio
    async def test_observer_errors_are_logged(self, coordinator, caplog):
        """A failing observer does not break the pass or other observers."""
        received = []

        def broken(report):
            raise RuntimeError("boom")

        coordinator.subscribe(broken)
        coordinator.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="offline_sync"):
            report = await coordinator.process_now()

        assert received == [report]
        assert any("Sync observer failed" in r.getMessage() for r in caplog.records)


class TestBackgroundTrigger:
    """Tests for platform background-sync events."""

    @pytest.mark.asyncio
    async def test_unregistered_tag_ignored(self, coordinator, operation_queue, remote):
        """Only registered tags run a pass."""
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        assert await coordinator.handle_background_trigger("unknown-tag") is None
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_registered_tag_runs(self, coordinator, operation_queue, remote):
        """A registered tag runs a full pass."""
        coordinator.register_background_trigger(FILE_TAG)
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        report = await coordinator.handle_background_trigger(FILE_TAG)

        assert report.trigger == "background"
        assert report.operations.succeeded == 1

    @pytest.mark.asyncio
    async def test_requires_active_client(self, operation_queue, upload_queue, connectivity, config, remote):
        """Without an open client session the trigger is skipped."""
        coordinator = TriggerCoordinator(
            operation_queue, upload_queue, connectivity, config, active_clients=lambda: 0
        )
        coordinator.register_background_trigger(FILE_TAG)
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        assert await coordinator.handle_background_trigger(FILE_TAG) is None
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_skipped_while_offline(self, coordinator, connectivity, operation_queue, remote):
        """Background triggers do nothing offline."""
        coordinator.register_background_trigger(FILE_TAG)
        connectivity.set_online(False)
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        assert await coordinator.handle_background_trigger(FILE_TAG) is None
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_transient_failures_raise_for_reschedule(self, coordinator, upload_queue, remote):
        """Items left pending by transient failures make the trigger raise."""
        coordinator.register_background_trigger(FILE_TAG)
        remote.errors.append(TransientError("network down"))
        await upload_queue.enqueue(b"x", metadata())

        with pytest.raises(TransientError):
            await coordinator.handle_background_trigger(FILE_TAG)

        assert coordinator.last_report.transient_failures == 1

    @pytest.mark.asyncio
    async def test_transient_pass_error_raises(self, coordinator, operation_queue):
        """A transient error escaping a queue pass also asks for a reschedule."""
        coordinator.register_background_trigger(FILE_TAG)
        operation_queue.process = AsyncMock(side_effect=TransientError("database busy"))

        with pytest.raises(TransientError):
            await coordinator.handle_background_trigger(FILE_TAG)

    @pytest.mark.asyncio
    async def test_terminal_failures_do_not_raise(self, coordinator, operation_queue):
        """Terminal failures are recorded, not rescheduled."""
        coordinator.register_background_trigger(FILE_TAG)
        await operation_queue.enqueue("update", "secrets", {})

        report = await coordinator.handle_background_trigger(FILE_TAG)

        assert report.operations.failed == 1
        assert report.transient_failures == 0


class TestLifecycle:
    """Tests for start/stop, timer and connectivity triggers."""

    @pytest.mark.asyncio
    async def test_start_registers_configured_tags(self, coordinator):
        """Tags from config are registered on start."""
        await coordinator.start()
        try:
            assert coordinator.background_tags == {"sync-operation-queue", "sync-file-queue"}
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_start_recovers_interrupted_work(
        self, coordinator, operation_queue, operation_store, upload_queue, upload_store, clock
    ):
        """Leftover claims from a previous run are released on start."""
        op_id = await operation_queue.enqueue("create", "secrets", {"title": "a"})
        record = await operation_store.get(op_id)
        record["claimed_at"] = format_timestamp(clock())
        await operation_store.put(record)

        file_id = await upload_queue.enqueue(b"x", metadata())
        record = await upload_store.get(file_id)
        record["upload_state"] = UploadState.UPLOADING.value
        await upload_store.put(record)

        await coordinator.start()
        await coordinator.stop()

        assert (await operation_queue.get(op_id)).claimed_at is None
        assert (await upload_queue.get(file_id)).upload_state is UploadState.PENDING

    @pytest.mark.asyncio
    async def test_timer_runs_passes(self, operation_queue, upload_queue, connectivity, remote):
        """The periodic timer processes queued work."""
        coordinator = TriggerCoordinator(
            operation_queue, upload_queue, connectivity, SyncConfig(sync_interval=0.01)
        )
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        await coordinator.start()
        await asyncio.sleep(0.1)
        await coordinator.stop()

        assert len(remote.calls) == 1
        assert coordinator.last_report.trigger == "timer"

    @pytest.mark.asyncio
    async def test_timer_skips_while_offline(self, operation_queue, upload_queue, remote):
        """Timer ticks do nothing while offline."""
        connectivity = ConnectivityMonitor(initial=False)
        coordinator = TriggerCoordinator(
            operation_queue, upload_queue, connectivity, SyncConfig(sync_interval=0.01)
        )
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        await coordinator.start()
        await asyncio.sleep(0.05)
        await coordinator.stop()

        assert remote.calls == []
        assert coordinator.last_report is None

    @pytest.mark.asyncio
    async def test_reconnect_triggers_pass(self, coordinator, connectivity, operation_queue, remote):
        """Coming back online schedules a pass."""
        connectivity.set_online(False)
        await coordinator.start()
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        connectivity.set_online(True)
        await coordinator.stop()

        assert len(remote.calls) == 1
        assert coordinator.last_report.trigger == "connectivity"

    @pytest.mark.asyncio
    async def test_stop_unsubscribes_connectivity(self, coordinator, connectivity, operation_queue, remote):
        """After stop, reconnecting no longer triggers passes."""
        await coordinator.start()
        await coordinator.stop()
        await operation_queue.enqueue("create", "secrets", {"title": "a"})

        connectivity.set_online(False)
        connectivity.set_online(True)
        await asyncio.sleep(0)

        assert remote.calls == []


class TestStatus:
    """Tests for status reporting."""

    @pytest.mark.asyncio
    async def test_status_counts(self, coordinator, operation_queue, upload_queue, clock):
        """status() reports queue counts and coordinator state."""
        await operation_queue.enqueue("create", "secrets", {"title": "a"})
        await operation_queue.enqueue("update", "secrets", {})
        await upload_queue.enqueue(b"x", metadata())

        now = format_timestamp(clock())
        status = await coordinator.status()
        assert status["operations"] == {"pending": 2, "failed": 0, "next_retry_at": now}
        assert status["uploads"] == {"pending": 1, "failed": 0, "next_retry_at": now}
        assert status["is_running"] is False
        assert status["is_online"] is True
        assert status["last_report"] is None

        await coordinator.process_now()
        status = await coordinator.status()
        assert status["operations"] == {"pending": 0, "failed": 1, "next_retry_at": None}
        assert status["last_report"]["trigger"] == "manual"

    @pytest.mark.asyncio
    async def test_status_reports_next_retry(self, coordinator, upload_queue, remote, clock):
        """An entry in backoff reports when it becomes ready again."""
        remote.errors.append(TransientError("timeout"))
        await upload_queue.enqueue(b"x", metadata())
        started = clock()

        await coordinator.process_now()

        status = await coordinator.status()
        assert status["uploads"]["next_retry_at"] == format_timestamp(started + timedelta(seconds=2))


class TestUnexpectedErrors:
    """Tests for failures outside the error taxonomy."""

    @pytest.mark.asyncio
    async def test_undecodable_row_does_not_block_triggers(
        self, coordinator, operation_queue, operation_store, remote
    ):
        """A corrupt stored operation is skipped and the rest still sync."""
        await operation_store.put({"id": "bad", "status": "pending", "created_at": None})
        await operation_queue.enqueue("create", "secrets", {"title": "a"})
        coordinator.register_background_trigger("sync-operation-queue")

        report = await coordinator.handle_background_trigger("sync-operation-queue")

        assert report.operations.succeeded == 1
        assert report.errors == []
        assert len(remote.calls_of("create")) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_recorded(self, coordinator, operation_queue, upload_queue, remote):
        """Any exception from a queue pass is logged and recorded, never raised."""
        operation_queue.process = AsyncMock(side_effect=KeyError("type"))
        await upload_queue.enqueue(b"x", metadata())

        report = await coordinator.process_now()

        assert report.errors == ["KeyError: 'type'"]
        assert report.transient_failures == 0
        assert report.uploads.succeeded == 1
        assert coordinator.is_running is False
