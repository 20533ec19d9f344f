"""Burn events and scan checkpoints.

Revision ID: 001_burn_events
Revises:
Create Date: 2026-10-16 00:01:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_burn_events"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "burn_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount_raw", sa.Text(), nullable=False),
        sa.Column("amount_human", sa.Numeric(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("origin", sa.String(16), nullable=False, server_default="scanner"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_burn_events_tx_log"),
    )
    op.create_index("idx_burn_events_token_block", "burn_events", ["token_address", "block_number"])
    op.create_index("idx_burn_events_timestamp", "burn_events", ["timestamp"])

    op.create_table(
        "scan_checkpoints",
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("last_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token_address"),
    )


def downgrade() -> None:
    op.drop_table("scan_checkpoints")
    op.drop_index("idx_burn_events_timestamp", table_name="burn_events")
    op.drop_index("idx_burn_events_token_block", table_name="burn_events")
    op.drop_table("burn_events")
