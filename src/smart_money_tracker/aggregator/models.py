"""Data models for wallet aggregation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from smart_money_tracker.ingestor.models import CanonicalEvent


@dataclass(frozen=True)
class WalletState:
    """Running aggregate of every event applied to one wallet.

    Instances are immutable snapshots; the aggregator replaces the snapshot
    it holds on each applied event. ``tags`` and ``is_whale`` are derived by
    the classifier from the other fields and never set independently.
    """

    address: str
    total_volume: int = 0
    transaction_count: int = 0
    first_seen: datetime | None = None
    last_active: datetime | None = None
    tags: tuple[str, ...] = ()
    is_whale: bool = False
    protocols: frozenset[str] = field(default_factory=frozenset)
    max_gas_cost: int = 0
    large_transfer_count: int = 0

    @property
    def score_id(self) -> str:
        """Natural key of the wallet's score document."""
        return f"{self.address}_score"

    @classmethod
    def empty(cls, address: str, *, seen_at: datetime) -> WalletState:
        return cls(address=address, first_seen=seen_at, last_active=seen_at)


@dataclass(frozen=True)
class AppliedEvent:
    """Record of an event applied to a wallet (idempotency key)."""

    event_id: str
    wallet_address: str
    source_id: str
    block_number: int

    @classmethod
    def for_wallet(cls, event: CanonicalEvent, wallet_address: str) -> AppliedEvent:
        return cls(
            event_id=event.id,
            wallet_address=wallet_address,
            source_id=event.source_id,
            block_number=event.block_number,
        )


@dataclass(frozen=True)
class LoadedWallet:
    """Persisted wallet state plus the event ids already applied to it."""

    state: WalletState
    applied: tuple[AppliedEvent, ...] = ()


@dataclass
class PendingWrites:
    """Wallet snapshots and applied ids not yet persisted."""

    states: list[WalletState] = field(default_factory=list)
    applied: list[AppliedEvent] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.states or self.applied)
