"""Data models for the ingestor module."""

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

NULL_ADDRESS = "0x0000000000000000000000000000000000000000"

# Protocol markers attached to canonical events.
SUBSCRIPTION_PROTOCOL = "subscription-service"
TRANSFER_PROTOCOL = "token-transfer"
DEFAULT_DEX_PROTOCOL = "dex"


class EventKind(str, Enum):
    """Discriminator of canonical events."""

    SUBSCRIBED = "Subscribed"
    CANCELLED = "Cancelled"
    TRANSFER = "Transfer"
    DEX_TRADE = "DEXTrade"


@dataclass(frozen=True)
class CanonicalEvent:
    """A normalized indexer record.

    Attributes:
        id: Source-qualified unique identifier (``"{source_id}:{raw id}"``).
        source_id: Indexer source the record came from.
        kind: Event discriminator.
        wallet_address: Lower-cased primary wallet.
        amount: Amount in token base units (never negative).
        block_number: Block the event was emitted in.
        timestamp: Block timestamp (UTC).
        counterparty_address: Receiving wallet of a two-party transfer.
        protocol: Protocol marker the event was emitted by.
        gas_cost: gasUsed * gasPrice when the indexer supplies them.
        is_large: Whether the amount crosses the large-transfer threshold.
        tx_hash: Transaction hash, informational only.
    """

    id: str
    source_id: str
    kind: EventKind
    wallet_address: str
    amount: int
    block_number: int
    timestamp: datetime
    counterparty_address: str | None = None
    protocol: str | None = None
    gas_cost: int = 0
    is_large: bool = False
    tx_hash: str | None = None

    @property
    def addresses(self) -> Iterator[str]:
        """Wallets whose state this event touches."""
        yield self.wallet_address
        if self.counterparty_address and self.counterparty_address != self.wallet_address:
            yield self.counterparty_address


class NormalizationError(Exception):
    """Raised when a raw indexer record cannot be normalized."""

    def __init__(self, message: str, *, raw_id: str | None = None) -> None:
        super().__init__(message)
        self.raw_id = raw_id
