"""Changeflow – PostgreSQL lock service.

The lock is one row per key in ``pipeline_locks``. Acquisition is a
single ``INSERT ... ON CONFLICT DO UPDATE`` whose ``WHERE`` clause only
lets the update through when the current lease expired or belongs to the
caller, so two instances can never both obtain an unexpired lease. All
expiry comparisons use the database clock (``NOW()``) to avoid skew
between instances.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import psycopg2

from changeflow.core.config import LockConfig
from changeflow.core.database import DatabaseManager
from changeflow.core.errors import LockExpiredError
from changeflow.core.logging import get_logger
from changeflow.lock.lease import Lease, LockService

if TYPE_CHECKING:
    from changeflow.targets.base import TransactionContext


logger = get_logger(__name__)

_LEASE_COLUMNS = "lock_key, owner, acquired_at, expires_at, fencing_token"


def _row_to_lease(row: tuple) -> Lease:
    lock_key, owner, acquired_at, expires_at, fencing_token = row
    return Lease(
        lock_key=lock_key,
        owner=owner,
        acquired_at=acquired_at,
        expires_at=expires_at,
        fencing_token=int(fencing_token),
    )


class PostgresLockService(LockService):
    """Lock service backed by the ``pipeline_locks`` table."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Optional[LockConfig] = None,
        **kwargs,
    ) -> None:
        super().__init__(config, **kwargs)
        self.db_manager = db_manager

    def _execute(self, sql: str, params: tuple) -> Optional[tuple]:
        with self.db_manager.get_audit_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                row = cursor.fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return row

    def _try_acquire(self, owner: str) -> Optional[Lease]:
        sql = f"""
            INSERT INTO pipeline_locks ({_LEASE_COLUMNS})
            VALUES (%s, %s, NOW(), NOW() + make_interval(secs => %s), 1)
            ON CONFLICT (lock_key) DO UPDATE
            SET owner = EXCLUDED.owner,
                acquired_at = EXCLUDED.acquired_at,
                expires_at = EXCLUDED.expires_at,
                fencing_token = pipeline_locks.fencing_token + 1
            WHERE pipeline_locks.expires_at <= NOW()
               OR pipeline_locks.owner = EXCLUDED.owner
            RETURNING {_LEASE_COLUMNS}
        """
        row = self._execute(sql, (self.lock_key, owner, self.config.lease_seconds))
        return _row_to_lease(row) if row is not None else None

    def renew(self, lease: Lease) -> Lease:
        sql = f"""
            UPDATE pipeline_locks
            SET expires_at = NOW() + make_interval(secs => %s)
            WHERE lock_key = %s
              AND owner = %s
              AND fencing_token = %s
              AND expires_at > NOW()
            RETURNING {_LEASE_COLUMNS}
        """
        try:
            row = self._execute(
                sql,
                (self.config.lease_seconds, lease.lock_key, lease.owner, lease.fencing_token),
            )
        except psycopg2.Error as exc:
            raise LockExpiredError(
                f"Could not renew lease on {lease.lock_key!r}: {exc}",
                {"lock_key": lease.lock_key, "fencing_token": lease.fencing_token},
            ) from exc

        if row is None:
            raise LockExpiredError(
                f"Cannot renew lease on {lease.lock_key!r} "
                f"(token={lease.fencing_token}): lease lost",
                {"lock_key": lease.lock_key, "fencing_token": lease.fencing_token},
            )
        renewed = _row_to_lease(row)
        logger.debug("Renewed lock %s until %s", renewed.lock_key, renewed.expires_at)
        return renewed

    def release(self, lease: Lease) -> None:
        sql = """
            UPDATE pipeline_locks
            SET expires_at = NOW()
            WHERE lock_key = %s AND owner = %s AND fencing_token = %s
            RETURNING fencing_token
        """
        row = self._execute(sql, (lease.lock_key, lease.owner, lease.fencing_token))
        if row is None:
            logger.warning(
                "Release of lock %s ignored: token %d is no longer current",
                lease.lock_key,
                lease.fencing_token,
            )
            return
        logger.info("Released lock %s (token=%d)", lease.lock_key, lease.fencing_token)

    def current_lease(self) -> Optional[Lease]:
        sql = f"SELECT {_LEASE_COLUMNS} FROM pipeline_locks WHERE lock_key = %s"
        row = self._execute(sql, (self.lock_key,))
        return _row_to_lease(row) if row is not None else None

    def is_current(self, lease: Lease, transaction: Optional["TransactionContext"] = None) -> bool:
        sql = """
            SELECT 1 FROM pipeline_locks
            WHERE lock_key = %s
              AND owner = %s
              AND fencing_token = %s
              AND expires_at > NOW()
        """
        params = (lease.lock_key, lease.owner, lease.fencing_token)
        if self._shares(transaction):
            # FOR SHARE blocks a takeover until the transaction ends.
            cursor = transaction.connection.cursor()
            try:
                cursor.execute(sql + " FOR SHARE", params)
                row = cursor.fetchone()
            finally:
                cursor.close()
        else:
            row = self._execute(sql, params)
        return row is not None

    def _shares(self, transaction: Optional["TransactionContext"]) -> bool:
        return (
            transaction is not None
            and transaction.connection is not None
            and transaction.database is self.db_manager
        )
