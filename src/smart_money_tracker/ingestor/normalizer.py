"""Normalization of raw indexer records into canonical events.

Raw records are the entity rows returned by the GraphQL indexer, tagged by
the feed with an ``entity`` discriminator. Normalization is a pure
transform: addresses are case-folded, amounts parsed into exact integers
and timestamps into UTC datetimes. Anything malformed raises
:class:`NormalizationError`; :meth:`EventNormalizer.normalize_batch` logs and
drops those records so one bad row never aborts a batch.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from smart_money_tracker.ingestor.models import (
    DEFAULT_DEX_PROTOCOL,
    NULL_ADDRESS,
    SUBSCRIPTION_PROTOCOL,
    TRANSFER_PROTOCOL,
    CanonicalEvent,
    EventKind,
    NormalizationError,
)

logger = logging.getLogger(__name__)

ENTITY_SUBSCRIBED = "SubscriptionService_Subscribed"
ENTITY_CANCELLED = "SubscriptionService_SubscriptionCancelled"
ENTITY_TRANSFER = "TokenTransfer"
ENTITY_DEX_TRADE = "DEXTrade"

DEFAULT_LARGE_TRANSFER_THRESHOLD = 1_000 * 10**18

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_INTEGER_RE = re.compile(r"^-?\d+$")


@dataclass
class NormalizedBatch:
    """Result of normalizing a page of raw records."""

    events: list[CanonicalEvent] = field(default_factory=list)
    errors: list[NormalizationError] = field(default_factory=list)


def _require(raw: Mapping[str, Any], key: str, raw_id: str | None) -> Any:
    value = raw.get(key)
    if value is None or value == "":
        raise NormalizationError(f"missing required field '{key}'", raw_id=raw_id)
    return value


def parse_address(value: Any, *, field_name: str, raw_id: str | None) -> str:
    """Case-fold and validate a hex address."""
    if not isinstance(value, str):
        raise NormalizationError(f"{field_name} must be a string address", raw_id=raw_id)
    address = value.strip().lower()
    if not _ADDRESS_RE.match(address):
        raise NormalizationError(f"{field_name} is not a valid address: {value!r}", raw_id=raw_id)
    return address


def parse_amount(value: Any, *, field_name: str, raw_id: str | None) -> int:
    """Parse a non-negative integer amount (base units)."""
    if isinstance(value, bool):
        raise NormalizationError(f"{field_name} must be an integer", raw_id=raw_id)
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and _INTEGER_RE.match(value.strip()):
        amount = int(value.strip())
    else:
        raise NormalizationError(f"{field_name} must be an integer, got {value!r}", raw_id=raw_id)
    if amount < 0:
        raise NormalizationError(f"{field_name} must be non-negative, got {amount}", raw_id=raw_id)
    return amount


def parse_timestamp(value: Any, *, raw_id: str | None) -> datetime:
    """Parse unix seconds (int or numeric string) or ISO-8601 into UTC."""
    if isinstance(value, bool):
        raise NormalizationError("timestamp must be unix seconds or ISO-8601", raw_id=raw_id)
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=UTC)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return datetime.fromtimestamp(int(text), tz=UTC)
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    except (ValueError, OverflowError, OSError) as e:
        raise NormalizationError(f"invalid timestamp {value!r}: {e}", raw_id=raw_id) from e
    raise NormalizationError(f"invalid timestamp {value!r}", raw_id=raw_id)


class EventNormalizer:
    """Converts raw indexer entity rows into :class:`CanonicalEvent` values.

    Example:
        ```python
        normalizer = EventNormalizer(large_transfer_threshold=10**21)
        event = normalizer.normalize(raw, source_id="TokenTransfer")
        ```
    """

    def __init__(self, *, large_transfer_threshold: int = DEFAULT_LARGE_TRANSFER_THRESHOLD) -> None:
        self._large_transfer_threshold = large_transfer_threshold
        self._handlers: dict[str, Callable[[Mapping[str, Any], str, str], CanonicalEvent]] = {
            ENTITY_SUBSCRIBED: self._subscription,
            ENTITY_CANCELLED: self._subscription,
            ENTITY_TRANSFER: self._transfer,
            ENTITY_DEX_TRADE: self._dex_trade,
        }

    @property
    def entities(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def normalize(self, raw: Mapping[str, Any], *, source_id: str | None = None) -> CanonicalEvent:
        """Normalize one raw record.

        Args:
            raw: Entity row, carrying an ``entity`` discriminator.
            source_id: Source to qualify the id with (defaults to the entity).

        Raises:
            NormalizationError: If the record is malformed or of an unknown entity.
        """
        if not isinstance(raw, Mapping):
            raise NormalizationError(f"raw event must be a mapping, got {type(raw).__name__}")
        raw_id_value = raw.get("id")
        raw_id = str(raw_id_value) if raw_id_value not in (None, "") else None
        if raw_id is None:
            raise NormalizationError("missing required field 'id'")

        entity = raw.get("entity") or source_id
        handler = self._handlers.get(str(entity)) if entity else None
        if handler is None:
            raise NormalizationError(f"unknown indexer entity {entity!r}", raw_id=raw_id)
        return handler(raw, source_id or str(entity), raw_id)

    def normalize_batch(
        self, raws: Iterable[Mapping[str, Any]], *, source_id: str | None = None
    ) -> NormalizedBatch:
        """Normalize a page of records, logging and dropping malformed ones."""
        batch = NormalizedBatch()
        for raw in raws:
            try:
                batch.events.append(self.normalize(raw, source_id=source_id))
            except NormalizationError as e:
                logger.warning("Dropping malformed %s record %s: %s", source_id or "indexer", e.raw_id, e)
                batch.errors.append(e)
        return batch

    def _common(self, raw: Mapping[str, Any], raw_id: str) -> tuple[int, datetime, int, str | None]:
        block_number = parse_amount(_require(raw, "blockNumber", raw_id), field_name="blockNumber", raw_id=raw_id)
        timestamp = parse_timestamp(_require(raw, "timestamp", raw_id), raw_id=raw_id)
        # The indexer entities carry no gas fields, so gas_cost stays 0 for fed
        # records and the gas rules only fire for records that supply them.
        gas_used = raw.get("gasUsed")
        gas_price = raw.get("gasPrice")
        gas_cost = 0
        if gas_used is not None and gas_price is not None:
            gas_cost = parse_amount(gas_used, field_name="gasUsed", raw_id=raw_id) * parse_amount(
                gas_price, field_name="gasPrice", raw_id=raw_id
            )
        tx_hash = raw.get("transactionHash")
        return block_number, timestamp, gas_cost, str(tx_hash).lower() if tx_hash else None

    def _subscription(self, raw: Mapping[str, Any], source_id: str, raw_id: str) -> CanonicalEvent:
        kind = EventKind.SUBSCRIBED if (raw.get("entity") or source_id) == ENTITY_SUBSCRIBED else EventKind.CANCELLED
        wallet = parse_address(_require(raw, "subscriber", raw_id), field_name="subscriber", raw_id=raw_id)
        value = raw.get("value")
        amount = 0 if value is None else parse_amount(value, field_name="value", raw_id=raw_id)
        block_number, timestamp, gas_cost, tx_hash = self._common(raw, raw_id)
        return CanonicalEvent(
            id=f"{source_id}:{raw_id}",
            source_id=source_id,
            kind=kind,
            wallet_address=wallet,
            amount=amount,
            block_number=block_number,
            timestamp=timestamp,
            protocol=SUBSCRIPTION_PROTOCOL,
            gas_cost=gas_cost,
            is_large=amount >= self._large_transfer_threshold,
            tx_hash=tx_hash,
        )

    def _transfer(self, raw: Mapping[str, Any], source_id: str, raw_id: str) -> CanonicalEvent:
        sender = parse_address(_require(raw, "from", raw_id), field_name="from", raw_id=raw_id)
        receiver = parse_address(_require(raw, "to", raw_id), field_name="to", raw_id=raw_id)
        # Mint/burn sides are not wallets.
        if sender == NULL_ADDRESS and receiver == NULL_ADDRESS:
            raise NormalizationError("transfer between null addresses", raw_id=raw_id)
        wallet, counterparty = sender, receiver
        if sender == NULL_ADDRESS:
            wallet, counterparty = receiver, None
        elif receiver == NULL_ADDRESS:
            counterparty = None

        amount = parse_amount(_require(raw, "value", raw_id), field_name="value", raw_id=raw_id)
        block_number, timestamp, gas_cost, tx_hash = self._common(raw, raw_id)
        return CanonicalEvent(
            id=f"{source_id}:{raw_id}",
            source_id=source_id,
            kind=EventKind.TRANSFER,
            wallet_address=wallet,
            counterparty_address=counterparty,
            amount=amount,
            block_number=block_number,
            timestamp=timestamp,
            protocol=TRANSFER_PROTOCOL,
            gas_cost=gas_cost,
            is_large=bool(raw.get("isLargeTransfer")) or amount >= self._large_transfer_threshold,
            tx_hash=tx_hash,
        )

    def _dex_trade(self, raw: Mapping[str, Any], source_id: str, raw_id: str) -> CanonicalEvent:
        trader = parse_address(_require(raw, "trader", raw_id), field_name="trader", raw_id=raw_id)
        amount = parse_amount(_require(raw, "amountIn", raw_id), field_name="amountIn", raw_id=raw_id)
        protocol = str(raw.get("dexProtocol") or DEFAULT_DEX_PROTOCOL).strip().lower()
        block_number, timestamp, gas_cost, tx_hash = self._common(raw, raw_id)
        return CanonicalEvent(
            id=f"{source_id}:{raw_id}",
            source_id=source_id,
            kind=EventKind.DEX_TRADE,
            wallet_address=trader,
            amount=amount,
            block_number=block_number,
            timestamp=timestamp,
            protocol=protocol or DEFAULT_DEX_PROTOCOL,
            gas_cost=gas_cost,
            is_large=amount >= self._large_transfer_threshold,
            tx_hash=tx_hash,
        )
