"""
Changeflow: Alembic Environment Configuration

This module configures Alembic for running migrations against the audit
database holding ``audit_entries``, ``pipeline_locks`` and
``audit_import_markers``.

Key responsibilities:
- Build SQLAlchemy engine from the AUDIT_DB_* environment variables
- Configure Alembic context for offline and online modes

Author: Changeflow Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

from __future__ import annotations

import os
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import create_engine, pool
from dotenv import load_dotenv

config = context.config

# Load environment variables from project .env so that Alembic uses the
# same database credentials as the application code.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = PROJECT_ROOT / ".env"
if ENV_FILE.exists():
    load_dotenv(ENV_FILE)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Stores use plain SQL through psycopg2; there is no declarative metadata.
target_metadata = None


def _get_database_url() -> str:
    """Construct the audit database URL from AUDIT_DB_* variables."""

    host = os.environ.get("AUDIT_DB_HOST", "localhost")
    port = os.environ.get("AUDIT_DB_PORT", "5432")
    name = os.environ.get("AUDIT_DB_NAME", "changeflow")
    user = os.environ.get("AUDIT_DB_USER", "changeflow")
    password = os.environ.get("AUDIT_DB_PASSWORD", "")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    In this mode we configure the context only with a URL and do not
    create an Engine. Calls to ``context.execute()`` emit the given
    string to the script output.
    """

    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against a live connection."""

    connectable = create_engine(_get_database_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
