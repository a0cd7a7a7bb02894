"""Repository pattern implementations for data access.

This module provides data access abstractions for wallet state, the
applied-event ledger, checkpoints and processing errors.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from smart_money_tracker.aggregator.models import AppliedEvent, LoadedWallet, WalletState
from smart_money_tracker.storage.models import (
    AppliedEventModel,
    CheckpointModel,
    EventProcessingErrorModel,
    WalletStateModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """INSERT construct supporting ON CONFLICT for the session's dialect."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class WalletStateDTO:
    """Data transfer object for persisted wallet state."""

    address: str
    total_volume: int
    transaction_count: int
    first_seen: datetime | None
    last_active: datetime | None
    tags: list[str] = field(default_factory=list)
    is_whale: bool = False
    protocols: list[str] = field(default_factory=list)
    max_gas_cost: int = 0
    large_transfer_count: int = 0
    version: int = 1
    synced_version: int = 0
    last_synced_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WalletStateModel) -> WalletStateDTO:
        return cls(
            address=model.address,
            total_volume=model.total_volume,
            transaction_count=model.transaction_count,
            first_seen=as_utc(model.first_seen),
            last_active=as_utc(model.last_active),
            tags=list(model.tags or []),
            is_whale=model.is_whale,
            protocols=list(model.protocols or []),
            max_gas_cost=model.max_gas_cost,
            large_transfer_count=model.large_transfer_count,
            version=model.version,
            synced_version=model.synced_version,
            last_synced_at=as_utc(model.last_synced_at),
            updated_at=as_utc(model.updated_at),
        )

    def to_state(self) -> WalletState:
        return WalletState(
            address=self.address,
            total_volume=self.total_volume,
            transaction_count=self.transaction_count,
            first_seen=self.first_seen,
            last_active=self.last_active,
            tags=tuple(self.tags),
            is_whale=self.is_whale,
            protocols=frozenset(self.protocols),
            max_gas_cost=self.max_gas_cost,
            large_transfer_count=self.large_transfer_count,
        )


class WalletStateRepository:
    """Repository for durable wallet state and the sync outbox."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> WalletStateDTO | None:
        result = await self.session.execute(
            select(WalletStateModel).where(WalletStateModel.address == address.lower())
        )
        model = result.scalar_one_or_none()
        return WalletStateDTO.from_model(model) if model else None

    async def upsert_many(self, states: Iterable[WalletState]) -> int:
        """Upsert full snapshots, bumping ``version`` on every write."""
        now = datetime.now(UTC)
        rows = [
            {
                "address": s.address.lower(),
                "total_volume": s.total_volume,
                "transaction_count": s.transaction_count,
                "first_seen": s.first_seen,
                "last_active": s.last_active,
                "tags": list(s.tags),
                "is_whale": s.is_whale,
                "protocols": sorted(s.protocols),
                "max_gas_cost": s.max_gas_cost,
                "large_transfer_count": s.large_transfer_count,
                "version": 1,
                "synced_version": 0,
                "created_at": now,
                "updated_at": now,
            }
            for s in states
        ]
        if not rows:
            return 0

        for row in rows:
            stmt = dialect_insert(self.session, WalletStateModel).values(**row)
            stmt = stmt.on_conflict_do_update(
                index_elements=["address"],
                set_={
                    "total_volume": stmt.excluded.total_volume,
                    "transaction_count": stmt.excluded.transaction_count,
                    "first_seen": stmt.excluded.first_seen,
                    "last_active": stmt.excluded.last_active,
                    "tags": stmt.excluded.tags,
                    "is_whale": stmt.excluded.is_whale,
                    "protocols": stmt.excluded.protocols,
                    "max_gas_cost": stmt.excluded.max_gas_cost,
                    "large_transfer_count": stmt.excluded.large_transfer_count,
                    "version": WalletStateModel.version + 1,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await self.session.execute(stmt)
        await self.session.flush()
        return len(rows)

    async def list_dirty(self, *, after_address: str | None = None, limit: int = 200) -> list[WalletStateDTO]:
        """Wallets whose latest version has not been materialized (keyset paged)."""
        stmt = select(WalletStateModel).where(WalletStateModel.version > WalletStateModel.synced_version)
        if after_address is not None:
            stmt = stmt.where(WalletStateModel.address > after_address)
        stmt = stmt.order_by(WalletStateModel.address).limit(limit)
        result = await self.session.execute(stmt)
        return [WalletStateDTO.from_model(m) for m in result.scalars().all()]

    async def count_dirty(self) -> int:
        result = await self.session.execute(
            select(sa.func.count())
            .select_from(WalletStateModel)
            .where(WalletStateModel.version > WalletStateModel.synced_version)
        )
        return int(result.scalar_one())

    async def list_updated_since(
        self, since: datetime | None, *, after_address: str | None = None, limit: int = 200
    ) -> list[WalletStateDTO]:
        """Wallets updated at or after ``since`` (all wallets when None)."""
        stmt = select(WalletStateModel)
        if since is not None:
            stmt = stmt.where(WalletStateModel.updated_at >= since)
        if after_address is not None:
            stmt = stmt.where(WalletStateModel.address > after_address)
        stmt = stmt.order_by(WalletStateModel.address).limit(limit)
        result = await self.session.execute(stmt)
        return [WalletStateDTO.from_model(m) for m in result.scalars().all()]

    async def mark_synced(self, address: str, version: int, *, synced_at: datetime | None = None) -> bool:
        """Record that ``version`` was materialized (never moves backwards)."""
        result = await self.session.execute(
            update(WalletStateModel)
            .where(
                (WalletStateModel.address == address.lower())
                & (WalletStateModel.synced_version < version)
            )
            # updated_at tracks state changes only; the column's onupdate would bump it here.
            .values(
                synced_version=version,
                last_synced_at=synced_at or datetime.now(UTC),
                updated_at=WalletStateModel.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)


class AppliedEventRepository:
    """Repository for the per-wallet applied-event ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, applied: Iterable[AppliedEvent]) -> int:
        rows = [
            {
                "event_id": a.event_id,
                "wallet_address": a.wallet_address.lower(),
                "source_id": a.source_id,
                "block_number": a.block_number,
                "applied_at": datetime.now(UTC),
            }
            for a in applied
        ]
        if not rows:
            return 0
        stmt = dialect_insert(self.session, AppliedEventModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["event_id", "wallet_address"])
        await self.session.execute(stmt)
        await self.session.flush()
        return len(rows)

    async def list_for_wallet(self, address: str) -> list[AppliedEvent]:
        result = await self.session.execute(
            select(AppliedEventModel).where(AppliedEventModel.wallet_address == address.lower())
        )
        return [
            AppliedEvent(
                event_id=m.event_id,
                wallet_address=m.wallet_address,
                source_id=m.source_id,
                block_number=m.block_number,
            )
            for m in result.scalars().all()
        ]

    async def prune(self, source_id: str, *, before_block: int) -> int:
        """Delete ids of ``source_id`` strictly below ``before_block``."""
        result = await self.session.execute(
            delete(AppliedEventModel).where(
                (AppliedEventModel.source_id == source_id)
                & (AppliedEventModel.block_number < before_block)
            )
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def load_wallet(self, address: str) -> LoadedWallet | None:
        """Persisted state of ``address`` together with its applied ids."""
        dto = await WalletStateRepository(self.session).get(address)
        if dto is None:
            return None
        return LoadedWallet(state=dto.to_state(), applied=tuple(await self.list_for_wallet(address)))


@dataclass
class CheckpointDTO:
    """Data transfer object for per-source checkpoints."""

    source_id: str
    last_block: int = 0
    last_sync_at: datetime | None = None
    events_processed: int = 0

    @classmethod
    def from_model(cls, model: CheckpointModel) -> CheckpointDTO:
        return cls(
            source_id=model.source_id,
            last_block=model.last_block,
            last_sync_at=as_utc(model.last_sync_at),
            events_processed=model.events_processed,
        )


class CheckpointRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, source_id: str) -> CheckpointDTO | None:
        result = await self.session.execute(
            select(CheckpointModel).where(CheckpointModel.source_id == source_id)
        )
        model = result.scalar_one_or_none()
        return CheckpointDTO.from_model(model) if model else None

    async def list_all(self) -> list[CheckpointDTO]:
        result = await self.session.execute(select(CheckpointModel).order_by(CheckpointModel.source_id))
        return [CheckpointDTO.from_model(m) for m in result.scalars().all()]

    async def advance(
        self,
        source_id: str,
        *,
        last_block: int,
        count_processed: int,
        synced_at: datetime | None = None,
    ) -> CheckpointDTO:
        """Move the checkpoint forward; ``last_block`` never decreases."""
        now = synced_at or datetime.now(UTC)
        current = await self.get(source_id)
        block = max(last_block, current.last_block if current else 0)
        processed = (current.events_processed if current else 0) + max(0, count_processed)

        stmt = dialect_insert(self.session, CheckpointModel).values(
            source_id=source_id,
            last_block=block,
            last_sync_at=now,
            events_processed=processed,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_id"],
            set_={
                "last_block": stmt.excluded.last_block,
                "last_sync_at": stmt.excluded.last_sync_at,
                "events_processed": stmt.excluded.events_processed,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return CheckpointDTO(
            source_id=source_id,
            last_block=block,
            last_sync_at=now,
            events_processed=processed,
        )


@dataclass
class EventProcessingErrorDTO:
    source_id: str
    event_id: str | None
    stage: str
    error_type: str
    message: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EventProcessingErrorModel) -> EventProcessingErrorDTO:
        return cls(
            source_id=model.source_id,
            event_id=model.event_id,
            stage=model.stage,
            error_type=model.error_type,
            message=model.message,
            created_at=as_utc(model.created_at),
        )


class EventProcessingErrorRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, errors: list[EventProcessingErrorDTO]) -> None:
        if not errors:
            return
        rows = [
            {
                "source_id": e.source_id,
                "event_id": e.event_id,
                "stage": e.stage,
                "error_type": e.error_type,
                "message": e.message,
                "created_at": e.created_at or datetime.now(UTC),
            }
            for e in errors
        ]
        await self.session.execute(sa.insert(EventProcessingErrorModel), rows)
        await self.session.flush()

    async def list_for_source(self, source_id: str, *, limit: int = 100) -> list[EventProcessingErrorDTO]:
        result = await self.session.execute(
            select(EventProcessingErrorModel)
            .where(EventProcessingErrorModel.source_id == source_id)
            .order_by(EventProcessingErrorModel.id.desc())
            .limit(limit)
        )
        return [EventProcessingErrorDTO.from_model(m) for m in result.scalars().all()]
