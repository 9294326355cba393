"""Changeflow – Legacy change log sources."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Mapping, Union

from psycopg2 import sql

from changeflow.core.database import DatabaseManager
from changeflow.core.errors import LegacyImportError
from changeflow.core.logging import get_logger
from changeflow.legacy.models import LegacyRecord


logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class LegacySource(ABC):
    """Read-only access to a legacy change log.

    ``source_id`` names the marker written once the import completed, so
    it must be stable across runs.
    """

    source_id: str

    @abstractmethod
    def read_records(self) -> List[LegacyRecord]:
        """Return every legacy record.

        Raises:
            LegacyImportError: If the log cannot be read or parsed.
        """


class InMemoryLegacySource(LegacySource):
    """Legacy records held in memory, as records or raw mappings."""

    def __init__(
        self,
        records: Iterable[Union[LegacyRecord, Mapping[str, Any]]] = (),
        source_id: str = "memory:legacy",
    ) -> None:
        self.source_id = source_id
        self._records = [
            record if isinstance(record, LegacyRecord) else LegacyRecord.from_mapping(record)
            for record in records
        ]

    def read_records(self) -> List[LegacyRecord]:
        return list(self._records)


class PostgresLegacySource(LegacySource):
    """Legacy change log stored in a PostgreSQL table."""

    _COLUMNS = (
        "execution_id",
        "change_id",
        "author",
        "timestamp",
        "state",
        "type",
        "change_log_class",
        "change_set_method",
        "execution_millis",
        "execution_hostname",
        "error_trace",
        "system_change",
    )

    def __init__(self, db_manager: DatabaseManager, table: str = "mongock_change_log") -> None:
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid legacy table name {table!r}")
        self.db_manager = db_manager
        self.table = table
        self.source_id = f"postgres:{table}"

    def read_records(self) -> List[LegacyRecord]:
        query = sql.SQL("SELECT {columns} FROM {table} ORDER BY timestamp").format(
            columns=sql.SQL(", ").join(sql.Identifier(column) for column in self._COLUMNS),
            table=sql.Identifier(self.table),
        )

        with self.db_manager.get_audit_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(query)
                rows = cursor.fetchall()
            except Exception as exc:
                conn.rollback()
                raise LegacyImportError(
                    f"Cannot read legacy table {self.table!r}: {exc}",
                    {"table": self.table},
                ) from exc
            finally:
                cursor.close()
            conn.rollback()

        logger.info("Read %d legacy record(s) from %s", len(rows), self.table)
        return [LegacyRecord.from_mapping(dict(zip(self._COLUMNS, row))) for row in rows]
