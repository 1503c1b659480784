"""
Custom exceptions for offline synchronization.

Queues, stores and remote API adapters raise these exceptions so that
processors can classify failures consistently:

- TransientError: network/timeout, retried with backoff
- RejectedError: remote rejected the request (4xx validation)
- PreconditionError: required reference missing, never retried
- ProgrammerError: unknown operation or stage, never retried
- ConflictError: local and server edits diverged and need a manual merge
"""


class OfflineSyncError(Exception):
    """Base exception for all offline sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(OfflineSyncError):
    """Raised for retryable failures (network, timeout, 5xx, 429)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if status_code is not None:
            details["status_code"] = status_code
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.status_code = status_code
        self.cause = cause


class RejectedError(OfflineSyncError):
    """Raised when the remote reports a client-side validation failure."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if status_code is not None:
            details["status_code"] = status_code
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.status_code = status_code
        self.cause = cause


class PreconditionError(OfflineSyncError):
    """Raised when a required reference (e.g. target id) is missing."""

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class ProgrammerError(OfflineSyncError):
    """Raised for unknown operation types or impossible states.

    These indicate a bug in the caller and are surfaced loudly instead of
    being queued for retry.
    """


class StoreError(OfflineSyncError):
    """Raised when a persistence operation fails."""

    def __init__(self, operation: str, table: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if table:
            details["table"] = table
        if cause:
            details["cause"] = str(cause)
        message = f"Store error during {operation}"
        if table:
            message += f": {table}"
        super().__init__(message, details)
        self.operation = operation
        self.table = table
        self.cause = cause


class RecordNotFoundError(OfflineSyncError):
    """Raised when a queued record is not found."""

    def __init__(self, record_id: str, table: str | None = None):
        details = {"record_id": record_id}
        if table:
            details["table"] = table
        super().__init__(f"Record not found: {record_id}", details)
        self.record_id = record_id
        self.table = table


class ConflictError(OfflineSyncError):
    """Raised when a local edit conflicts with the server and needs a manual merge."""

    def __init__(self, record_id: str | None, fields: list[str], conflict: object = None):
        details: dict = {"fields": list(fields)}
        if record_id:
            details["record_id"] = record_id
        super().__init__(f"Conflicting edits on {record_id or 'record'}: {', '.join(fields)}", details)
        self.record_id = record_id
        self.fields = list(fields)
        self.conflict = conflict


# Errors that must never consume retry budget
TERMINAL_ERRORS: tuple[type[OfflineSyncError], ...] = (PreconditionError, ProgrammerError)
