"""
Configuration for the offline sync engine.

Settings can be built in code, read from ``OFFLINE_SYNC_*`` environment
variables, or loaded from the ``offline_sync:`` section of a YAML file:

```yaml
offline_sync:
  db_path: ~/.local/share/myapp/offline.db
  api_base_url: https://api.example.com/v1
  sync_interval: 30
  operations:
    max_attempts: 5
    max_delay: 60
  uploads:
    concurrency: 3
```
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .backoff import BackoffPolicy

DEFAULT_CACHE_TTL = 24 * 60 * 60  # 24 hours, in seconds
DEFAULT_UPLOAD_CONCURRENCY = 3


@dataclass
class QueueConfig:
    """Retry and concurrency settings for one queue instance."""

    base_delay: float = 1.0  # seconds
    multiplier: float = 2.0
    max_delay: float = 60.0  # cap
    max_attempts: int = 5
    concurrency: int = 1
    retry_rejected: bool = False  # treat 4xx like transient errors
    claim_timeout: float = 300.0  # seconds before an in-flight claim is abandoned

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.claim_timeout <= 0:
            raise ValueError(f"claim_timeout must be > 0, got {self.claim_timeout}")
        # Backoff fields are checked by BackoffPolicy
        self.backoff()

    def backoff(self) -> BackoffPolicy:
        """Build the backoff policy for this queue."""
        return BackoffPolicy(
            base_delay=self.base_delay,
            multiplier=self.multiplier,
            cap=self.max_delay,
            max_attempts=self.max_attempts,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, defaults: QueueConfig | None = None) -> QueueConfig:
        base = defaults or cls()
        if not data:
            return base
        known = {f.name for f in fields(cls)}
        return replace(base, **{k: v for k, v in data.items() if k in known})


def _default_upload_config() -> QueueConfig:
    return QueueConfig(concurrency=DEFAULT_UPLOAD_CONCURRENCY)


@dataclass
class SyncConfig:
    """Configuration for the offline sync engine."""

    db_path: str | Path = ":memory:"
    api_base_url: str | None = None
    api_timeout: float = 30.0  # seconds

    operations: QueueConfig = field(default_factory=QueueConfig)
    uploads: QueueConfig = field(default_factory=_default_upload_config)

    # Trigger behavior
    sync_interval: float = 30.0  # seconds between periodic passes
    background_tags: tuple[str, ...] = ("sync-operation-queue", "sync-file-queue")

    # Cache
    cache_ttl: float = DEFAULT_CACHE_TTL

    # Advisory storage quota check for uploads
    quota_warning_ratio: float = 0.9

    # Network detection
    connectivity_host: str = "dns.google"
    connectivity_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create config from environment variables."""
        env = os.environ
        config = cls(
            db_path=env.get("OFFLINE_SYNC_DB_PATH", ":memory:"),
            api_base_url=env.get("OFFLINE_SYNC_API_BASE_URL"),
            api_timeout=float(env.get("OFFLINE_SYNC_API_TIMEOUT", "30")),
            sync_interval=float(env.get("OFFLINE_SYNC_INTERVAL", "30")),
            cache_ttl=float(env.get("OFFLINE_SYNC_CACHE_TTL", str(DEFAULT_CACHE_TTL))),
            quota_warning_ratio=float(env.get("OFFLINE_SYNC_QUOTA_WARNING_RATIO", "0.9")),
            connectivity_host=env.get("OFFLINE_SYNC_CONNECTIVITY_HOST", "dns.google"),
        )

        shared: dict[str, Any] = {}
        if env.get("OFFLINE_SYNC_MAX_ATTEMPTS"):
            shared["max_attempts"] = int(env["OFFLINE_SYNC_MAX_ATTEMPTS"])
        if env.get("OFFLINE_SYNC_MAX_DELAY"):
            shared["max_delay"] = float(env["OFFLINE_SYNC_MAX_DELAY"])
        if env.get("OFFLINE_SYNC_RETRY_REJECTED", "").lower() in ("1", "true", "yes"):
            shared["retry_rejected"] = True

        uploads = dict(shared)
        if env.get("OFFLINE_SYNC_UPLOAD_CONCURRENCY"):
            uploads["concurrency"] = int(env["OFFLINE_SYNC_UPLOAD_CONCURRENCY"])

        # replace() re-runs validation on the merged settings
        config.operations = replace(config.operations, **shared)
        config.uploads = replace(config.uploads, **uploads)
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create config from a plain mapping (e.g. parsed YAML)."""
        known = {f.name for f in fields(cls)} - {"operations", "uploads"}
        kwargs: dict[str, Any] = {k: v for k, v in data.items() if k in known}
        if "background_tags" in kwargs:
            kwargs["background_tags"] = tuple(kwargs["background_tags"])
        if isinstance(kwargs.get("db_path"), str) and kwargs["db_path"] != ":memory:":
            kwargs["db_path"] = Path(kwargs["db_path"]).expanduser()

        return cls(
            operations=QueueConfig.from_dict(data.get("operations")),
            uploads=QueueConfig.from_dict(data.get("uploads"), _default_upload_config()),
            **kwargs,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> SyncConfig:
        """Load config from the ``offline_sync`` section of a YAML file."""
        content = Path(path).read_text(encoding="utf-8")
        raw = yaml.safe_load(content) or {}
        return cls.from_dict(raw.get("offline_sync", {}))
