"""
Remote API adapters.

Provides:
- RemoteAPI: abstract per-entity REST contract used by the queues
- HttpRemoteAPI: aiohttp implementation
- classify_error: maps raw failures onto TransientError / RejectedError
"""

from .base import RemoteAPI, classify_error, error_for_status, extract_status_code
from .http import HttpRemoteAPI

__all__ = [
    "HttpRemoteAPI",
    "RemoteAPI",
    "classify_error",
    "error_for_status",
    "extract_status_code",
]
