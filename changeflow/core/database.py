"""
Changeflow: Database Connection Management

This module provides connection pooling and convenience helpers for
connecting to the PostgreSQL audit database. It uses psycopg2's
``ThreadedConnectionPool`` with a thin wrapper that exposes context
managers for acquiring connections.

Key responsibilities:
- Maintain the connection pool for the audit database
- Provide context managers to acquire/release connections safely
- Encapsulate connection string construction from configuration

External dependencies:
- psycopg2-binary: PostgreSQL client and connection pooling

Database tables accessed:
- None directly (this module is infrastructure only)

Thread safety: Thread-safe. ``ThreadedConnectionPool`` is used because
bounded-parallel stages append audit entries from worker threads.

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

from contextlib import contextmanager
from typing import Generator, Optional

from psycopg2 import pool
from psycopg2.extensions import connection as PsycopgConnection

from changeflow.core.config import ChangeflowConfig, DatabaseConfig, get_config
from changeflow.core.logging import get_logger

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Raised when a database connection or operation fails."""


class DatabaseManager:
    """Manage the connection pool for the Changeflow audit database.

    Typical usage::

        from changeflow.core.database import get_db_manager

        db = get_db_manager()
        with db.get_audit_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            result = cursor.fetchone()
            cursor.close()

    Attributes:
        config: Changeflow configuration instance.
        _audit_pool: Connection pool for the audit DB.
    """

    def __init__(self, config: ChangeflowConfig) -> None:
        """Initialise the database manager with configuration.

        Args:
            config: Loaded Changeflow configuration.
        """

        self.config = config
        self._audit_pool: Optional[pool.ThreadedConnectionPool] = None
        logger.info("DatabaseManager initialised")

    # ======================================================================
    # Internal helpers
    # ======================================================================

    @staticmethod
    def _create_connection_string(db_config: DatabaseConfig) -> str:
        """Build a PostgreSQL connection string from configuration.

        Args:
            db_config: Database configuration.

        Returns:
            A DSN string suitable for psycopg2.
        """

        return (
            f"host={db_config.host} "
            f"port={db_config.port} "
            f"dbname={db_config.name} "
            f"user={db_config.user} "
            f"password={db_config.password}"
        )

    def _get_or_create_pool(self) -> pool.ThreadedConnectionPool:
        """Return the existing audit pool or create a new one.

        Raises:
            DatabaseError: If the pool cannot be created.
        """

        if self._audit_pool is not None:
            return self._audit_pool

        db_config = self.config.audit_db
        dsn = self._create_connection_string(db_config)
        try:
            new_pool = pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=db_config.pool_size,
                dsn=dsn,
            )
        except Exception as exc:  # pragma: no cover - connection errors
            logger.error(f"Failed to create connection pool: {exc}")
            raise DatabaseError("Failed to create database connection pool") from exc

        self._audit_pool = new_pool
        logger.info("Created connection pool for database '%s'", db_config.name)
        return new_pool

    # ======================================================================
    # Public context managers
    # ======================================================================

    @contextmanager
    def get_audit_connection(self) -> Generator[PsycopgConnection, None, None]:
        """Yield a connection to the audit database.

        Yields:
            A psycopg2 connection object. The connection is returned to the
            pool when the context manager exits.

        Raises:
            DatabaseError: If a connection cannot be acquired.
        """

        pool_obj = self._get_or_create_pool()
        try:
            conn = pool_obj.getconn()
        except Exception as exc:  # pragma: no cover - connection errors
            logger.error(f"Failed to acquire audit_db connection: {exc}")
            raise DatabaseError("Failed to acquire audit_db connection") from exc

        try:
            yield conn
        finally:
            pool_obj.putconn(conn)

    # ======================================================================
    # Lifecycle
    # ======================================================================

    def close_all(self) -> None:
        """Close the connection pool.

        This method should be called during graceful shutdown to ensure
        all connections are closed cleanly.
        """

        if self._audit_pool is not None:
            self._audit_pool.closeall()
            self._audit_pool = None
            logger.info("Closed audit_db connection pool")


# ============================================================================
# Global Accessor
# ============================================================================

_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Return the global :class:`DatabaseManager` singleton.

    The manager is created on first access using the global configuration
    from :func:`changeflow.core.config.get_config`. Only composition roots
    (CLI scripts) use this accessor; stores and services take a manager
    in their constructor.

    Returns:
        A :class:`DatabaseManager` instance.
    """

    global _db_manager
    if _db_manager is None:
        config = get_config()
        _db_manager = DatabaseManager(config)
    return _db_manager
