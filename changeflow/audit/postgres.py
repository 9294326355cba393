"""Changeflow – PostgreSQL audit store.

This module persists the audit trail into the ``audit_entries`` table
and legacy import markers into ``audit_import_markers`` (see
``migrations/versions``). ``seq`` is a ``BIGSERIAL`` and provides the
insertion order used to break timestamp ties.

When an append happens inside a transaction opened by
:class:`changeflow.targets.postgres.PostgresTargetSystem` on the same
:class:`DatabaseManager`, the insert runs on the transaction's connection
and is committed (or rolled back) together with the change itself. Any
other transaction gets the insert as a deferred pre-commit action.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, TYPE_CHECKING, TypeVar

import psycopg2
from psycopg2.extras import Json

from changeflow.audit.models import AuditEntry, ChangeState
from changeflow.audit.store import AuditStore
from changeflow.core.database import DatabaseError, DatabaseManager
from changeflow.core.errors import AuditWriteError
from changeflow.core.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from changeflow.targets.base import TransactionContext


logger = get_logger(__name__)

T = TypeVar("T")

# Failures worth retrying: the server or the pool could not be reached.
_TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, DatabaseError)

_ENTRY_COLUMNS = """
    seq,
    change_id,
    stage,
    state,
    author,
    checksum,
    timestamp,
    duration_millis,
    error,
    run_id,
    target_system,
    metadata
"""

_INSERT_SQL = """
    INSERT INTO audit_entries (
        change_id,
        stage,
        state,
        author,
        checksum,
        timestamp,
        duration_millis,
        error,
        run_id,
        target_system,
        metadata
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    RETURNING seq
"""


def _row_to_entry(row: tuple) -> AuditEntry:
    (
        seq,
        change_id,
        stage,
        state,
        author,
        checksum,
        timestamp,
        duration_millis,
        error,
        run_id,
        target_system,
        metadata,
    ) = row

    return AuditEntry(
        change_id=change_id,
        stage=stage,
        state=ChangeState(state),
        author=author,
        checksum=checksum or "",
        timestamp=timestamp,
        duration_millis=int(duration_millis or 0),
        error=error,
        run_id=run_id,
        target_system=target_system,
        metadata=metadata or {},
        sequence=int(seq),
    )


def _insert_params(entry: AuditEntry) -> tuple:
    return (
        entry.change_id,
        entry.stage,
        entry.state.value,
        entry.author,
        entry.checksum,
        entry.timestamp,
        entry.duration_millis,
        Json(entry.error) if entry.error is not None else None,
        entry.run_id,
        entry.target_system,
        Json(entry.metadata or {}),
    )


@dataclass
class PostgresAuditStore(AuditStore):
    """Audit store backed by the ``audit_entries`` table."""

    db_manager: DatabaseManager

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    def _guard(self, operation: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` translating driver errors into :class:`AuditWriteError`."""

        try:
            return fn()
        except _TRANSIENT_ERRORS as exc:
            raise AuditWriteError(
                f"Audit store unavailable during {operation}: {exc}",
                transient=True,
            ) from exc
        except psycopg2.Error as exc:
            raise AuditWriteError(
                f"Audit store rejected {operation}: {exc}",
                transient=False,
            ) from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(
        self,
        entry: AuditEntry,
        transaction: Optional["TransactionContext"] = None,
    ) -> AuditEntry:
        if transaction is not None:
            if transaction.connection is None or transaction.database is not self.db_manager:
                transaction.defer(lambda: self.append(entry))
                return entry
            return self._guard("append", lambda: self._insert(transaction.connection, entry))

        def _op() -> AuditEntry:
            with self.db_manager.get_audit_connection() as conn:
                try:
                    stored = self._insert(conn, entry)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            return stored

        return self._guard("append", _op)

    @staticmethod
    def _insert(conn, entry: AuditEntry) -> AuditEntry:
        cursor = conn.cursor()
        try:
            cursor.execute(_INSERT_SQL, _insert_params(entry))
            (seq,) = cursor.fetchone()
        finally:
            cursor.close()
        return entry.with_sequence(int(seq))

    def record_import_marker(self, source: str, imported_count: int) -> None:
        sql = """
            INSERT INTO audit_import_markers (source, imported_count, completed_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (source) DO NOTHING
        """

        def _op() -> None:
            with self.db_manager.get_audit_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql, (source, imported_count))
                    conn.commit()
                finally:
                    cursor.close()

        self._guard("record_import_marker", _op)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetch(self, operation: str, sql: str, params: tuple = ()) -> List[AuditEntry]:
        def _op() -> List[AuditEntry]:
            with self.db_manager.get_audit_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql, params)
                    rows = cursor.fetchall()
                finally:
                    cursor.close()
                # Close the implicit read transaction before returning
                # the connection to the pool.
                conn.rollback()
            return [_row_to_entry(row) for row in rows]

        return self._guard(operation, _op)

    def latest_entry(self, change_id: str) -> Optional[AuditEntry]:
        sql = f"""
            SELECT {_ENTRY_COLUMNS}
            FROM audit_entries
            WHERE change_id = %s
            ORDER BY timestamp DESC, seq DESC
            LIMIT 1
        """
        rows = self._fetch("latest_entry", sql, (change_id,))
        return rows[0] if rows else None

    def all_latest_entries(self) -> List[AuditEntry]:
        sql = f"""
            SELECT {_ENTRY_COLUMNS}
            FROM (
                SELECT DISTINCT ON (change_id) {_ENTRY_COLUMNS}
                FROM audit_entries
                ORDER BY change_id, timestamp DESC, seq DESC
            ) AS latest
            ORDER BY timestamp, seq
        """
        return self._fetch("all_latest_entries", sql)

    def history(self, change_id: str) -> List[AuditEntry]:
        sql = f"""
            SELECT {_ENTRY_COLUMNS}
            FROM audit_entries
            WHERE change_id = %s
            ORDER BY timestamp, seq
        """
        return self._fetch("history", sql, (change_id,))

    def all_entries(self) -> List[AuditEntry]:
        sql = f"""
            SELECT {_ENTRY_COLUMNS}
            FROM audit_entries
            ORDER BY timestamp, seq
        """
        return self._fetch("all_entries", sql)

    def has_import_marker(self, source: str) -> bool:
        sql = "SELECT 1 FROM audit_import_markers WHERE source = %s"

        def _op() -> bool:
            with self.db_manager.get_audit_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql, (source,))
                    row = cursor.fetchone()
                finally:
                    cursor.close()
                conn.rollback()
            return row is not None

        return self._guard("has_import_marker", _op)
