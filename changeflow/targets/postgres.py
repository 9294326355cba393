"""
Changeflow: PostgreSQL Target System

Transactional adapter that applies change units to a PostgreSQL database
through a :class:`DatabaseManager`. Change callables receive an open
psycopg2 cursor; the adapter owns commit and rollback.

Key responsibilities:
- Open one database transaction per change unit
- Share the connection with :class:`PostgresAuditStore` so that the
  change and its EXECUTED audit entry commit atomically

External dependencies:
- psycopg2-binary: via :class:`changeflow.core.database.DatabaseManager`

Database tables accessed:
- Whatever the change callables touch; ``audit_entries`` when the audit
  store shares the same manager

Thread safety: Thread-safe. Each transaction uses its own pooled
connection.

Author: Changeflow Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

from changeflow.core.database import DatabaseManager
from changeflow.core.logging import get_logger
from changeflow.targets.base import TargetSystemAdapter, TransactionContext

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

T = TypeVar("T")


class PostgresTargetSystem(TargetSystemAdapter):
    """Transactional adapter for a PostgreSQL database.

    For atomic audit writes, construct the audit store with the same
    ``db_manager``; otherwise the audit insert runs as a deferred action
    just before this adapter commits.
    """

    def __init__(self, name: str, db_manager: DatabaseManager) -> None:
        super().__init__(name)
        self.db_manager = db_manager

    def is_transactional(self) -> bool:
        return True

    def _handle(self, transaction: Optional[TransactionContext]) -> Any:
        if transaction is None:
            raise RuntimeError("PostgresTargetSystem changes require a transaction")
        return transaction.handle

    def run_in_transaction(self, work: Callable[[TransactionContext], T]) -> T:
        with self.db_manager.get_audit_connection() as conn:
            cursor = conn.cursor()
            tx = TransactionContext(
                target_system=self.name,
                handle=cursor,
                connection=conn,
                database=self.db_manager,
            )
            try:
                result = work(tx)
                tx.flush_deferred()
                conn.commit()
            except Exception:
                conn.rollback()
                logger.debug("Rolled back transaction on %s", self.name)
                raise
            finally:
                cursor.close()
        return result
