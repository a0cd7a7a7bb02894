"""Initial schema for wallet state, applied events, checkpoints and documents.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-16 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Wallet state (doubles as the sync outbox)
    op.create_table(
        "wallet_states",
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("total_volume", sa.String(78), nullable=False),
        sa.Column("transaction_count", sa.BigInteger(), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("is_whale", sa.Boolean(), nullable=False),
        sa.Column("protocols", sa.JSON(), nullable=False),
        sa.Column("max_gas_cost", sa.String(78), nullable=False),
        sa.Column("large_transfer_count", sa.BigInteger(), nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False),
        sa.Column("synced_version", sa.BigInteger(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )
    op.create_index("idx_wallet_states_updated_at", "wallet_states", ["updated_at"])
    op.create_index("idx_wallet_states_is_whale", "wallet_states", ["is_whale"])

    # Applied-event ledger (idempotency across restarts)
    op.create_table(
        "applied_events",
        sa.Column("event_id", sa.String(200), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("source_id", sa.String(80), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id", "wallet_address"),
    )
    op.create_index("idx_applied_events_wallet", "applied_events", ["wallet_address"])
    op.create_index(
        "idx_applied_events_source_block", "applied_events", ["source_id", "block_number"]
    )

    # Per-source checkpoints
    op.create_table(
        "checkpoints",
        sa.Column("source_id", sa.String(80), nullable=False),
        sa.Column("last_block", sa.BigInteger(), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("events_processed", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("source_id"),
    )

    # Malformed indexer records
    op.create_table(
        "event_processing_errors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_id", sa.String(80), nullable=False),
        sa.Column("event_id", sa.String(200), nullable=True),
        sa.Column("stage", sa.String(40), nullable=False),
        sa.Column("error_type", sa.String(80), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_event_processing_errors_source", "event_processing_errors", ["source_id"]
    )

    # Materialized read-side documents
    op.create_table(
        "materialized_documents",
        sa.Column("collection", sa.String(80), nullable=False),
        sa.Column("doc_id", sa.String(120), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("collection", "doc_id"),
    )
    op.create_index(
        "idx_materialized_documents_synced_at",
        "materialized_documents",
        ["collection", "synced_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_materialized_documents_synced_at", table_name="materialized_documents")
    op.drop_table("materialized_documents")
    op.drop_index("idx_event_processing_errors_source", table_name="event_processing_errors")
    op.drop_table("event_processing_errors")
    op.drop_table("checkpoints")
    op.drop_index("idx_applied_events_source_block", table_name="applied_events")
    op.drop_index("idx_applied_events_wallet", table_name="applied_events")
    op.drop_table("applied_events")
    op.drop_index("idx_wallet_states_is_whale", table_name="wallet_states")
    op.drop_index("idx_wallet_states_updated_at", table_name="wallet_states")
    op.drop_table("wallet_states")
