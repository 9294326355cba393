"""
Changeflow: Tests for Database Connection Management

Test suite for ``changeflow.core.database``. Covers:
- Connection string construction
- Basic connection acquisition (integration, optional)
"""

from __future__ import annotations

import pytest

from changeflow.core.config import DatabaseConfig, get_config
from changeflow.core.database import DatabaseManager


class TestDatabaseManagerUnit:
    """Unit-level tests for DatabaseManager internals."""

    def test_create_connection_string(self) -> None:
        """Connection string should embed host, port, db name, user, and password."""

        db_config = DatabaseConfig(
            host="testhost",
            port=5433,
            name="testdb",
            user="testuser",
            password="testpass",
        )

        conn_str = DatabaseManager._create_connection_string(db_config)

        assert "host=testhost" in conn_str
        assert "port=5433" in conn_str
        assert "dbname=testdb" in conn_str
        assert "user=testuser" in conn_str
        assert "password=testpass" in conn_str

    def test_close_all_without_pool(self) -> None:
        manager = DatabaseManager(get_config())

        manager.close_all()

        assert manager._audit_pool is None


@pytest.mark.integration
class TestDatabaseManagerIntegration:
    """Integration tests that require a running PostgreSQL instance."""

    def test_audit_connection_select_one(self) -> None:
        manager = DatabaseManager(get_config())
        try:
            with manager.get_audit_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT 1")
                assert cursor.fetchone() == (1,)
                cursor.close()
        finally:
            manager.close_all()
