"""Changeflow – Audit entry model.

This module defines the logical, backend-agnostic audit record. Field
names mirror the compatibility contract relied upon by reporting, the
legacy importer and CLI inspection::

    change_id, stage, state, author, checksum, timestamp,
    duration_millis, error

Every concrete store maps this record to its native representation.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from changeflow.core.types import ErrorDict, MetadataDict


class ChangeState(str, Enum):
    """Execution state of a change unit as recorded in the audit trail.

    ``PENDING`` doubles as the "execution started" marker written before a
    non-transactional change is applied. ``IGNORED`` is reported for
    changes skipped because they were already executed with a matching
    checksum; the executor never writes it, so the EXECUTED entry stays
    the latest one.
    """

    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    IGNORED = "IGNORED"


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of a change unit's execution outcome.

    Entries are append-only. A newer entry for the same ``change_id``
    supersedes older ones without mutating them.

    Attributes:
        change_id: Globally unique change unit identifier.
        stage: Name of the stage the change belongs to.
        state: Recorded :class:`ChangeState`.
        author: Author of the change unit (or the operator for fixes).
        checksum: Content checksum of the change at execution time.
        timestamp: When the entry was recorded (timezone-aware UTC).
        duration_millis: Execution duration; ``0`` for markers.
        error: Serialised error payload for failures, else ``None``.
        run_id: Identifier of the pipeline run that wrote the entry.
        target_system: Target system identifier the change ran against.
        metadata: Free-form diagnostics (e.g. legacy import provenance).
        sequence: Store-assigned, monotonically increasing insertion
            number used to break timestamp ties. ``None`` until stored.
    """

    change_id: str
    stage: str
    state: ChangeState
    author: str
    checksum: str
    timestamp: datetime
    duration_millis: int = 0
    error: Optional[ErrorDict] = None
    run_id: Optional[str] = None
    target_system: Optional[str] = None
    metadata: MetadataDict = field(default_factory=dict)
    sequence: Optional[int] = None

    def with_sequence(self, sequence: int) -> "AuditEntry":
        """Return a copy carrying the store-assigned sequence number."""

        return replace(self, sequence=sequence)

    def sort_key(self) -> tuple:
        """Ordering key defining "latest": timestamp, then insertion order."""

        return (self.timestamp, self.sequence if self.sequence is not None else -1)

    def matches_checksum(self, checksum: str) -> bool:
        """Return True if this entry was recorded for content ``checksum``.

        Legacy imports made without a definition carry no checksum and
        match any content.
        """

        if not self.checksum and self.metadata.get("legacy_source"):
            return True
        return self.checksum == checksum

    def to_dict(self) -> Dict[str, Any]:
        """Return the logical schema as a JSON-friendly dict."""

        return {
            "changeId": self.change_id,
            "stage": self.stage,
            "state": self.state.value,
            "author": self.author,
            "checksum": self.checksum,
            "timestamp": self.timestamp.isoformat(),
            "durationMillis": self.duration_millis,
            "error": self.error,
            "runId": self.run_id,
            "targetSystem": self.target_system,
            "metadata": dict(self.metadata),
            "sequence": self.sequence,
        }
