"""
Offline Sync

Durable offline synchronization engine for asyncio clients.

Provides:
- Operation queue for create/update/delete mutations made while offline
- Upload queue with staged states and a bounded worker pool
- Shared exponential backoff policy
- Response cache with TTL and stale-while-revalidate reads
- Trigger coordinator for connectivity, timer and background-sync events
- Conflict detection and resolution for records edited while offline

Usage:

    >>> from offline_sync import OPERATIONS_TABLE, OperationQueue, SQLiteDatabase, SyncConfig
    >>> config = SyncConfig.from_env()
    >>> async with SQLiteDatabase(config.db_path) as db:
    ...     queue = OperationQueue(db.table(OPERATIONS_TABLE), remote, config.operations)
    ...     await queue.enqueue("create", "secrets", {"title": "Gmail"})
    ...     stats = await queue.process()

Coordinating triggers:

    connectivity = ConnectivityMonitor()
    coordinator = TriggerCoordinator(operations, uploads, connectivity, config)
    await coordinator.start()

    # Platform background-sync event
    await coordinator.handle_background_trigger("sync-file-queue")

    # Explicit user retry, runs even while offline
    report = await coordinator.process_now()
"""

from .backoff import BackoffPolicy
from .cache import CachedResource, CacheMonitor, CacheRead, ResponseCache, fetch_with_fallback
from .checksum import calculate_checksum, verify_checksum
from .config import QueueConfig, SyncConfig
from .conflict import Conflict, ConflictResolution, ConflictResolver
from .connectivity import ConnectivityMonitor
from .coordinator import TriggerCoordinator, TriggerSource

# Exceptions
from .exceptions import (
    ConflictError,
    OfflineSyncError,
    PreconditionError,
    ProgrammerError,
    RecordNotFoundError,
    RejectedError,
    StoreError,
    TransientError,
)
from .logging_utils import configure_structured_logging
from .models import (
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
from .queues import OperationQueue, UploadQueue
from .quota import StorageQuota, estimate_quota
from .remote import HttpRemoteAPI, RemoteAPI, classify_error
from .store import (
    CACHE_TABLE,
    OPERATIONS_TABLE,
    UPLOADS_TABLE,
    MemoryStore,
    RecordStore,
    SQLiteDatabase,
    SQLiteStore,
)

__all__ = [
    # Queues
    "OperationQueue",
    "UploadQueue",
    "BackoffPolicy",
    # Cache
    "ResponseCache",
    "CacheMonitor",
    "CacheRead",
    "CachedResource",
    "fetch_with_fallback",
    # Conflicts
    "ConflictResolver",
    "ConflictResolution",
    "Conflict",
    # Coordination
    "TriggerCoordinator",
    "TriggerSource",
    "ConnectivityMonitor",
    # Storage
    "RecordStore",
    "MemoryStore",
    "SQLiteDatabase",
    "SQLiteStore",
    "OPERATIONS_TABLE",
    "UPLOADS_TABLE",
    "CACHE_TABLE",
    # Remote
    "RemoteAPI",
    "HttpRemoteAPI",
    "classify_error",
    # Models
    "SyncOperation",
    "OperationType",
    "OperationStatus",
    "UploadEntry",
    "UploadState",
    "FileMetadata",
    "CacheEntry",
    "QueueStats",
    "SyncReport",
    # Config
    "SyncConfig",
    "QueueConfig",
    # Utilities
    "calculate_checksum",
    "verify_checksum",
    "StorageQuota",
    "estimate_quota",
    "configure_structured_logging",
    # Exceptions
    "OfflineSyncError",
    "TransientError",
    "RejectedError",
    "PreconditionError",
    "ProgrammerError",
    "StoreError",
    "RecordNotFoundError",
    "ConflictError",
]

__version__ = "0.1.0"
