"""
Durable work queues.

Provides:
- OperationQueue: FIFO queue of create/update/delete mutations
- UploadQueue: staged file uploads processed by a bounded worker pool
- run_pool: shared-cursor worker pool used by both queues
"""

from .operations import OperationQueue, Outcome
from .pool import run_pool
from .uploads import Stager, UploadQueue

__all__ = [
    "OperationQueue",
    "Outcome",
    "Stager",
    "UploadQueue",
    "run_pool",
]
