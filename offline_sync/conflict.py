"""
Conflict detection and resolution for records edited while offline.

A queued local edit can reach the server after the same record was changed
elsewhere. Before writing, the local copy is compared with the server copy:

- No conflict when both carry the same ``updated_at``, when the local copy
  is at least as new as the server's, or when none of the compared fields
  differ (only timestamps moved).
- Otherwise a :class:`Conflict` lists the fields whose values diverged.

A conflict is settled in one of three ways:

- keep-local: local edits applied on top of the server record
- keep-server: the server record as is
- manual: a merge supplied by the caller (e.g. from a resolution dialog)

Last-writer-wins chooses between keep-local and keep-server by timestamp.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import ConflictError, PreconditionError, ProgrammerError
from .utils import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class ConflictResolution(Enum):
    """How a conflict is settled."""

    KEEP_LOCAL = "keep-local"
    KEEP_SERVER = "keep-server"
    MANUAL = "manual"


@dataclass
class Conflict:
    """A local edit that diverged from a newer server version.

    Attributes:
        record_id: ID of the record in conflict
        local: Local copy (may hold only the edited fields)
        server: Full server copy
        fields: Fields whose local and server values differ
        local_updated_at: Timestamp of the local copy
        server_updated_at: Timestamp of the server copy
        detected_at: When the conflict was detected
    """

    record_id: str | None
    local: dict[str, Any]
    server: dict[str, Any]
    fields: list[str]
    local_updated_at: datetime
    server_updated_at: datetime
    detected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "local": self.local,
            "server": self.server,
            "fields": list(self.fields),
            "local_updated_at": format_timestamp(self.local_updated_at),
            "server_updated_at": format_timestamp(self.server_updated_at),
            "detected_at": format_timestamp(self.detected_at),
        }


class ConflictResolver:
    """Detects and settles conflicts between local and server records.

    Example:
        >>> resolver = ConflictResolver(fields=["title", "username", "password", "url", "notes", "tags"])
        >>> merged = resolver.reconcile(local_secret, server_secret)
    """

    def __init__(
        self,
        fields: Iterable[str] | None = None,
        strategy: ConflictResolution | str | None = None,
        timestamp_field: str = "updated_at",
        key_field: str = "id",
    ):
        """Initialize the resolver.

        Args:
            fields: Fields to compare (default: every field of the local copy
                except the key and timestamp)
            strategy: Fixed resolution for every conflict (default:
                last-writer-wins)
            timestamp_field: Field holding the modification timestamp
            key_field: Field holding the record ID
        """
        self.fields = list(fields) if fields is not None else None
        self.strategy = ConflictResolution(strategy) if strategy is not None else None
        self.timestamp_field = timestamp_field
        self.key_field = key_field

    def _timestamp(self, record: dict[str, Any], side: str) -> datetime:
        value = record.get(self.timestamp_field)
        if value is None:
            raise PreconditionError(
                f"{side.capitalize()} record has no {self.timestamp_field}",
                field=self.timestamp_field,
            )
        return parse_timestamp(value)

    def conflicting_fields(self, local: dict[str, Any], server: dict[str, Any]) -> list[str]:
        """Compared fields whose values differ.

        Fields absent from the local copy carry no local change and are
        skipped.
        """
        names = self.fields
        if names is None:
            names = [k for k in local if k not in (self.key_field, self.timestamp_field)]
        return [name for name in names if name in local and local[name] != server.get(name)]

    def detect(self, local: dict[str, Any], server: dict[str, Any]) -> Conflict | None:
        """Compare a local copy with the server copy.

        Returns:
            The conflict, or None if the local edit can be applied as is

        Raises:
            PreconditionError: If either copy lacks the timestamp field
        """
        local_ts = self._timestamp(local, "local")
        server_ts = self._timestamp(server, "server")
        if local_ts >= server_ts:
            return None

        fields = self.conflicting_fields(local, server)
        if not fields:
            return None

        return Conflict(
            record_id=server.get(self.key_field) or local.get(self.key_field),
            local=dict(local),
            server=dict(server),
            fields=fields,
            local_updated_at=local_ts,
            server_updated_at=server_ts,
        )

    @staticmethod
    def last_writer_wins(conflict: Conflict) -> ConflictResolution:
        """Keep whichever side was written last; ties go to the server."""
        if conflict.local_updated_at > conflict.server_updated_at:
            return ConflictResolution.KEEP_LOCAL
        return ConflictResolution.KEEP_SERVER

    def decide(self, conflict: Conflict) -> ConflictResolution:
        return self.strategy or self.last_writer_wins(conflict)

    def apply(
        self,
        local: dict[str, Any],
        server: dict[str, Any],
        resolution: ConflictResolution | str,
        merged: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Build the record to write for a resolution.

        keep-local and manual results are layered over the server record and
        always carry the server's timestamp.

        Raises:
            ProgrammerError: If a manual resolution has no merged data
        """
        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.KEEP_SERVER:
            return dict(server)

        if resolution is ConflictResolution.MANUAL:
            if merged is None:
                raise ProgrammerError("Manual conflict resolution requires merged data")
            changes = merged
        else:
            changes = local

        result = {**server, **changes}
        if self.timestamp_field in server:
            result[self.timestamp_field] = server[self.timestamp_field]
        return result

    def reconcile(self, local: dict[str, Any], server: dict[str, Any]) -> dict[str, Any]:
        """Detect, decide and apply in one step.

        Returns:
            The record to write

        Raises:
            ConflictError: If the strategy is manual and the copies conflict
        """
        conflict = self.detect(local, server)
        if conflict is None:
            return self.apply(local, server, ConflictResolution.KEEP_LOCAL)

        resolution = self.decide(conflict)
        if resolution is ConflictResolution.MANUAL:
            raise ConflictError(conflict.record_id, conflict.fields, conflict)

        logger.info(
            f"Conflict on {conflict.record_id} ({', '.join(conflict.fields)}) "
            f"resolved as {resolution.value}"
        )
        return self.apply(local, server, resolution)
