"""SHA-256 checksums for queued upload payloads."""

from __future__ import annotations

import hashlib
import re

_CHECKSUM_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def calculate_checksum(data: bytes) -> str:
    """Hex-encoded SHA-256 checksum of data (64 characters)."""
    return hashlib.sha256(data).hexdigest()


def verify_checksum(data: bytes, expected: str) -> bool:
    """Compare data against an expected checksum (case-insensitive).

    Malformed checksums never match.
    """
    if not _CHECKSUM_RE.match(expected or ""):
        return False
    return calculate_checksum(data) == expected.lower()
