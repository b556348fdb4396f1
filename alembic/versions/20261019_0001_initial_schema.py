"""Initial schema: transfers, contracts, block progress.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("token_name", sa.String(100), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(78), nullable=False),
        sa.Column("price_usd", sa.Float(), nullable=True),
        sa.Column("value_usd", sa.Float(), nullable=True),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_transfers_tx_log"),
    )
    op.create_index("idx_transfers_block", "transfers", ["block_number"])
    op.create_index("idx_transfers_contract_block", "transfers", ["contract_address", "block_number"])
    op.create_index("idx_transfers_from", "transfers", ["from_address"])
    op.create_index("idx_transfers_to", "transfers", ["to_address"])
    op.create_index("idx_transfers_block_ts", "transfers", ["block_timestamp"])

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("start_block", sa.BigInteger(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
    )

    op.create_table(
        "block_progress",
        sa.Column("contract", sa.String(42), nullable=False),
        sa.Column("last_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("contract"),
    )


def downgrade() -> None:
    op.drop_table("block_progress")
    op.drop_table("contracts")
    op.drop_index("idx_transfers_block_ts", table_name="transfers")
    op.drop_index("idx_transfers_to", table_name="transfers")
    op.drop_index("idx_transfers_from", table_name="transfers")
    op.drop_index("idx_transfers_contract_block", table_name="transfers")
    op.drop_index("idx_transfers_block", table_name="transfers")
    op.drop_table("transfers")
