"""SQLAlchemy models for persistent storage.

This module defines the database schema for durable wallet state, the
applied-event idempotency ledger, per-source checkpoints, dropped-event
errors and the materialized document table.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from smart_money_tracker.storage.types import UInt256


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class WalletStateModel(Base):
    """Durable WalletState.

    ``version`` increments on every persist; ``synced_version`` records the
    version last materialized. Rows with ``version > synced_version`` form the
    sync outbox.
    """

    __tablename__ = "wallet_states"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    total_volume: Mapped[int] = mapped_column(UInt256(), nullable=False, default=0)
    transaction_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    first_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_active: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_whale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    protocols: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    max_gas_cost: Mapped[int] = mapped_column(UInt256(), nullable=False, default=0)
    large_transfer_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    synced_version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_wallet_states_updated_at", "updated_at"),
        Index("idx_wallet_states_is_whale", "is_whale"),
    )


class AppliedEventModel(Base):
    """Event ids applied per wallet, kept for the open checkpoint window."""

    __tablename__ = "applied_events"

    event_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    source_id: Mapped[str] = mapped_column(String(80), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_applied_events_wallet", "wallet_address"),
        Index("idx_applied_events_source_block", "source_id", "block_number"),
    )


class CheckpointModel(Base):
    """Last durably processed position per event source."""

    __tablename__ = "checkpoints"

    source_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    events_processed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class EventProcessingErrorModel(Base):
    """Per-event processing errors (dropped records are never silent)."""

    __tablename__ = "event_processing_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(80), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    stage: Mapped[str] = mapped_column(String(40), nullable=False)
    error_type: Mapped[str] = mapped_column(String(80), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_event_processing_errors_source", "source_id"),)


class MaterializedDocumentModel(Base):
    """Read-side documents keyed by (collection, natural id)."""

    __tablename__ = "materialized_documents"

    collection: Mapped[str] = mapped_column(String(80), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(120), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_materialized_documents_synced_at", "collection", "synced_at"),)
