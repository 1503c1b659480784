"""
Structured JSON logging utilities.

Queue processors and the trigger coordinator log through standard
``logging`` loggers under ``offline_sync``. Each queue tags its records
with ``queue=<name>`` and each coordinator pass with ``trigger=<source>``
through :class:`SyncLoggerAdapter`. Hosts that ship logs to a collector can
switch the output to single-line JSON with :func:`configure_structured_logging`,
which keeps those tags as top-level fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    Format records as single-line JSON objects.

    Fields:
    - timestamp: when the record was created, ISO 8601 in UTC
    - level, logger, message
    - exception: formatted traceback, if any
    - context added through ``extra`` (queue, trigger, item_id, ...)
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                entry[key] = _json_safe(value)

        return json.dumps(entry)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = "offline_sync",
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Send a logger's output to ``stream`` as JSON lines.

    Existing handlers on the logger are replaced, so calling this twice
    does not duplicate output.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger,
            ``None`` for the root logger)
        stream: Output stream (default: stdout)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class SyncLoggerAdapter(logging.LoggerAdapter):
    """Adds fixed context (``queue`` or ``trigger``) to every record.

    Per-call ``extra`` values are kept alongside the fixed context.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs
