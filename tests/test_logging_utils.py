"""Tests for structured logging helpers."""

import io
import json
import logging
import sys

from offline_sync.logging_utils import (
    StructuredJsonFormatter,
    SyncLoggerAdapter,
    configure_structured_logging,
)


class TestStructuredJsonFormatter:
    """Tests for JSON log output."""

    def test_formats_as_json(self):
        """Records become single-line JSON with standard fields."""
        record = logging.LogRecord(
            "offline_sync.queues", logging.WARNING, __file__, 10, "retry %d", (3,), None
        )
        record.queue = "uploads"

        output = json.loads(StructuredJsonFormatter().format(record))

        assert output["level"] == "WARNING"
        assert output["logger"] == "offline_sync.queues"
        assert output["message"] == "retry 3"
        assert output["queue"] == "uploads"
        assert "lineno" not in output

    def test_timestamp_is_record_creation_time(self):
        """The timestamp comes from the record, not from formatting time."""
        record = logging.LogRecord("offline_sync", logging.INFO, __file__, 1, "msg", (), None)
        record.created = 0.0

        output = json.loads(StructuredJsonFormatter().format(record))
        assert output["timestamp"] == "1970-01-01T00:00:00+00:00"

    def test_unserializable_extra_is_stringified(self):
        """Extra values that are not JSON serializable are converted to strings."""
        record = logging.LogRecord("offline_sync", logging.INFO, __file__, 1, "msg", (), None)
        record.item = object()

        output = json.loads(StructuredJsonFormatter().format(record))
        assert output["item"].startswith("<object object")

    def test_exception_included(self):
        """Tracebacks are carried in the exception field."""
        try:
            raise KeyError("type")
        except KeyError:
            record = logging.LogRecord(
                "offline_sync", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        output = json.loads(StructuredJsonFormatter().format(record))
        assert "KeyError: 'type'" in output["exception"]


class TestLoggerHelpers:
    """Tests for logger configuration helpers."""

    def test_configure_replaces_handlers(self):
        """Configuring twice does not duplicate handlers."""
        logger = configure_structured_logging(logging.DEBUG, logger_name="offline_sync.test")
        configure_structured_logging(logging.DEBUG, logger_name="offline_sync.test")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredJsonFormatter)
        assert logger.level == logging.DEBUG
        logger.handlers.clear()

    def test_adapter_context_reaches_json_output(self):
        """Queue context set by the adapter appears in the JSON line."""
        stream = io.StringIO()
        logger = configure_structured_logging(logging.INFO, "offline_sync.json_test", stream=stream)
        adapter = SyncLoggerAdapter(logger, {"queue": "uploads"})

        adapter.info("pass finished", extra={"item_id": "f-1"})
        logger.handlers.clear()

        output = json.loads(stream.getvalue())
        assert output["queue"] == "uploads"
        assert output["item_id"] == "f-1"
        assert output["message"] == "pass finished"

    def test_adapter_adds_context(self, caplog):
        """Adapter context ends up on every record."""
        adapter = SyncLoggerAdapter(logging.getLogger("offline_sync.adapter"), {"queue": "operations"})

        with caplog.at_level(logging.INFO, logger="offline_sync.adapter"):
            adapter.info("processing", extra={"item_id": "op-1"})

        record = caplog.records[-1]
        assert record.queue == "operations"
        assert record.item_id == "op-1"
