"""audit entries

Revision ID: 0001
Revises: None
Create Date: 2026-10-19

This migration creates the append-only audit log:

- audit_entries

``seq`` is a BIGSERIAL assigned at insert time; together with
``timestamp`` it defines which entry is the latest for a change id.
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the audit_entries table and its lookup index."""

    op.create_table(
        "audit_entries",
        sa.Column("seq", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("change_id", sa.String(length=255), nullable=False),
        sa.Column("stage", sa.String(length=255), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("author", sa.String(length=255), nullable=False),
        sa.Column("checksum", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_millis", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("error", postgresql.JSONB, nullable=True),
        sa.Column("run_id", sa.String(length=100), nullable=True),
        sa.Column("target_system", sa.String(length=255), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.CheckConstraint(
            "state IN ('PENDING', 'EXECUTED', 'FAILED', 'ROLLED_BACK', 'IGNORED')",
            name="ck_audit_entries_state",
        ),
    )

    op.create_index(
        "idx_audit_entries_change_latest",
        "audit_entries",
        ["change_id", "timestamp", "seq"],
    )
    op.create_index("idx_audit_entries_run", "audit_entries", ["run_id"])


def downgrade() -> None:
    """Drop the audit_entries table."""

    op.drop_index("idx_audit_entries_run", table_name="audit_entries")
    op.drop_index("idx_audit_entries_change_latest", table_name="audit_entries")
    op.drop_table("audit_entries")
