"""audit import markers

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-19

This migration creates the table recording completed legacy imports:

- audit_import_markers
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0003"
down_revision: Union[str, None] = "0002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the audit_import_markers table."""

    op.create_table(
        "audit_import_markers",
        sa.Column("source", sa.String(length=255), primary_key=True),
        sa.Column("imported_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "completed_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )


def downgrade() -> None:
    """Drop the audit_import_markers table."""

    op.drop_table("audit_import_markers")
