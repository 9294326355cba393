"""pipeline locks

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19

This migration creates the lease table backing the distributed pipeline
lock:

- pipeline_locks

Rows are never deleted: releasing a lease only sets ``expires_at`` so
that ``fencing_token`` keeps increasing across acquisitions.
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the pipeline_locks table."""

    op.create_table(
        "pipeline_locks",
        sa.Column("lock_key", sa.String(length=255), primary_key=True),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fencing_token", sa.BigInteger, nullable=False),
    )


def downgrade() -> None:
    """Drop the pipeline_locks table."""

    op.drop_table("pipeline_locks")
