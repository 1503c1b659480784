"""
Remote API abstraction consumed by the queues.

Implementations translate queue items into requests against the backend
and raise TransientError / RejectedError on failure. Anything else that
escapes is classified by :func:`classify_error`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..exceptions import (
    OfflineSyncError,
    RejectedError,
    TransientError,
)
from ..models import UploadEntry

# Statuses worth retrying: timeout, throttling, server errors
RETRYABLE_STATUS_CODES: tuple[int, ...] = (408, 425, 429, 500, 502, 503, 504)


class RemoteAPI(ABC):
    """Per-entity REST endpoints plus a multipart attachment upload."""

    @abstractmethod
    async def create(self, entity: str, payload: dict[str, Any]) -> Any:
        """Create a record (POST /{entity})."""

    @abstractmethod
    async def update(self, entity: str, record_id: str, payload: dict[str, Any]) -> Any:
        """Update a record (PUT /{entity}/{id})."""

    @abstractmethod
    async def delete(self, entity: str, record_id: str) -> Any:
        """Delete a record (DELETE /{entity}/{id})."""

    @abstractmethod
    async def upload(self, entry: UploadEntry, checksum: str | None) -> Any:
        """Upload a staged file payload."""

    async def close(self) -> None:
        """Release network resources."""


def extract_status_code(exc: BaseException) -> int | None:
    """Try to extract an HTTP status code from common client exceptions."""
    for attr in ("status_code", "status"):
        status = getattr(exc, attr, None)
        if isinstance(status, int):
            return status
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(code, int):
            return code
    return None


def error_for_status(status: int, message: str, cause: Exception | None = None) -> OfflineSyncError:
    """Map an HTTP status to the retryable / rejected taxonomy."""
    if status in RETRYABLE_STATUS_CODES or status >= 500:
        return TransientError(message, status_code=status, cause=cause)
    return RejectedError(message, status_code=status, cause=cause)


def classify_error(exc: BaseException) -> OfflineSyncError:
    """Classify an exception raised by a dispatch.

    Already-classified errors pass through. Connection failures and
    timeouts are transient; HTTP 4xx responses are rejections. Unknown
    failures are treated as transient so they keep their retry budget.
    """
    if isinstance(exc, OfflineSyncError):
        return exc

    cause = exc if isinstance(exc, Exception) else None
    status = extract_status_code(exc)
    if status is not None and 400 <= status:
        return error_for_status(status, str(exc) or f"HTTP {status}", cause)

    return TransientError(str(exc) or exc.__class__.__name__, status_code=status, cause=cause)
