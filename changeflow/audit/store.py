"""Changeflow – Audit store contract and in-memory implementation.

The :class:`AuditStore` is an append/query interface over an immutable
log of :class:`AuditEntry` records. It has no dependencies on the rest of
the engine.

Concurrency contract: ``append`` is atomic and may be called concurrently
for different change ids. Writes for the same change id are serialised by
the executor, so stores need no per-key locking.

Transactions: when ``append`` receives a ``transaction`` handle from a
transactional target system, the write must become part of that backend
transaction. Stores that cannot share the backend connection register the
write with ``transaction.defer`` so that it happens at commit time.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional

from changeflow.audit.models import AuditEntry, utcnow
from changeflow.core.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from changeflow.targets.base import TransactionContext


logger = get_logger(__name__)


class AuditStore(ABC):
    """Abstract append-only audit log."""

    @abstractmethod
    def append(
        self,
        entry: AuditEntry,
        transaction: Optional["TransactionContext"] = None,
    ) -> AuditEntry:
        """Append ``entry`` and return it with its assigned sequence.

        Raises:
            AuditWriteError: If the store is unavailable.
        """

    @abstractmethod
    def latest_entry(self, change_id: str) -> Optional[AuditEntry]:
        """Return the entry with the greatest (timestamp, sequence) for ``change_id``."""

    @abstractmethod
    def all_latest_entries(self) -> List[AuditEntry]:
        """Return the latest entry of every change id, oldest first."""

    @abstractmethod
    def history(self, change_id: str) -> List[AuditEntry]:
        """Return every entry recorded for ``change_id``, oldest first."""

    @abstractmethod
    def all_entries(self) -> List[AuditEntry]:
        """Return the full log in (timestamp, sequence) order."""

    @abstractmethod
    def has_import_marker(self, source: str) -> bool:
        """Return True when the legacy import from ``source`` already completed."""

    @abstractmethod
    def record_import_marker(self, source: str, imported_count: int) -> None:
        """Persist the completion marker for a legacy import."""


def latest_by_change(entries: List[AuditEntry]) -> Dict[str, AuditEntry]:
    """Reduce a list of entries to the latest entry per change id."""

    latest: Dict[str, AuditEntry] = {}
    for entry in entries:
        current = latest.get(entry.change_id)
        if current is None or entry.sort_key() >= current.sort_key():
            latest[entry.change_id] = entry
    return latest


class InMemoryAuditStore(AuditStore):
    """Process-local audit store.

    Used for tests and for embedding the engine where the audit trail
    lives alongside an in-memory target system. A single lock makes each
    append atomic and keeps sequence numbers strictly increasing.
    """

    def __init__(self) -> None:
        self._entries: List[AuditEntry] = []
        self._markers: Dict[str, tuple[int, datetime]] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def _append_now(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            self._sequence += 1
            stored = entry.with_sequence(self._sequence)
            self._entries.append(stored)
        logger.debug(
            "audit append change_id=%s state=%s seq=%d",
            stored.change_id,
            stored.state.value,
            stored.sequence,
        )
        return stored

    def append(
        self,
        entry: AuditEntry,
        transaction: Optional["TransactionContext"] = None,
    ) -> AuditEntry:
        if transaction is not None:
            transaction.defer(lambda: self._append_now(entry))
            return entry
        return self._append_now(entry)

    def latest_entry(self, change_id: str) -> Optional[AuditEntry]:
        with self._lock:
            candidates = [e for e in self._entries if e.change_id == change_id]
        if not candidates:
            return None
        return max(candidates, key=AuditEntry.sort_key)

    def all_latest_entries(self) -> List[AuditEntry]:
        with self._lock:
            entries = list(self._entries)
        return sorted(latest_by_change(entries).values(), key=AuditEntry.sort_key)

    def history(self, change_id: str) -> List[AuditEntry]:
        with self._lock:
            candidates = [e for e in self._entries if e.change_id == change_id]
        return sorted(candidates, key=AuditEntry.sort_key)

    def all_entries(self) -> List[AuditEntry]:
        with self._lock:
            entries = list(self._entries)
        return sorted(entries, key=AuditEntry.sort_key)

    def has_import_marker(self, source: str) -> bool:
        with self._lock:
            return source in self._markers

    def record_import_marker(self, source: str, imported_count: int) -> None:
        with self._lock:
            self._markers[source] = (imported_count, utcnow())
