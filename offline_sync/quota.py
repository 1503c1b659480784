"""Advisory storage quota reporting.

Quota is consulted before admitting large upload payloads but never
enforced; the host decides what to do with a warning.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageQuota:
    """Used / total byte counts for the storage backing the queues."""

    used: int = 0
    quota: int = 0

    @property
    def remaining(self) -> int:
        return max(self.quota - self.used, 0)

    @property
    def percentage(self) -> float:
        return (self.used / self.quota) * 100 if self.quota > 0 else 0.0

    def would_exceed(self, extra_bytes: int, ratio: float = 1.0) -> bool:
        """Check whether adding extra_bytes pushes usage above ratio of the quota."""
        if self.quota <= 0:
            return False
        return (self.used + extra_bytes) > self.quota * ratio

    def to_dict(self) -> dict[str, float]:
        return {
            "used": self.used,
            "remaining": self.remaining,
            "quota": self.quota,
            "percentage": self.percentage,
        }


def estimate_quota(path: str | Path | None = None) -> StorageQuota:
    """Estimate quota from the filesystem holding path.

    Returns an empty quota (all zeros) when the path is in-memory or the
    filesystem cannot be queried.
    """
    if path is None or str(path) == ":memory:":
        return StorageQuota()

    target = Path(path).expanduser()
    # Walk up to an existing directory; the database file may not exist yet
    while not target.exists() and target != target.parent:
        target = target.parent

    try:
        usage = shutil.disk_usage(target)
    except OSError as e:
        logger.debug(f"Storage quota unavailable for {target}: {e}")
        return StorageQuota()

    return StorageQuota(used=usage.used, quota=usage.total)
