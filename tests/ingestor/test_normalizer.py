"""Tests for the event normalizer."""

from datetime import UTC, datetime

import pytest

from smart_money_tracker.ingestor.models import (
    NULL_ADDRESS,
    SUBSCRIPTION_PROTOCOL,
    TRANSFER_PROTOCOL,
    EventKind,
    NormalizationError,
)
from smart_money_tracker.ingestor.normalizer import (
    ENTITY_CANCELLED,
    ENTITY_DEX_TRADE,
    ENTITY_SUBSCRIBED,
    ENTITY_TRANSFER,
    EventNormalizer,
    parse_amount,
    parse_timestamp,
)

SUBSCRIBER = "0x" + "Ab" * 20
SENDER = "0x" + "1" * 40
RECEIVER = "0x" + "2" * 40


@pytest.fixture
def normalizer() -> EventNormalizer:
    return EventNormalizer(large_transfer_threshold=1_000)


def subscribed_raw(**overrides: object) -> dict[str, object]:
    raw: dict[str, object] = {
        "entity": ENTITY_SUBSCRIBED,
        "id": "0xabc-1",
        "subscriber": SUBSCRIBER,
        "planId": "2",
        "expiresAt": "1767225600",
        "blockNumber": "1200",
        "transactionHash": "0xDEAD",
        "timestamp": "1767225600",
    }
    raw.update(overrides)
    return raw


def transfer_raw(**overrides: object) -> dict[str, object]:
    raw: dict[str, object] = {
        "entity": ENTITY_TRANSFER,
        "id": "0xabc-2",
        "from": SENDER,
        "to": RECEIVER,
        "value": "500",
        "blockNumber": 1300,
        "timestamp": 1767225700,
        "isLargeTransfer": False,
    }
    raw.update(overrides)
    return raw


class TestSubscriptionEvents:
    def test_subscribed(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(subscribed_raw())

        assert event.kind == EventKind.SUBSCRIBED
        assert event.id == f"{ENTITY_SUBSCRIBED}:0xabc-1"
        assert event.source_id == ENTITY_SUBSCRIBED
        assert event.wallet_address == SUBSCRIBER.lower()
        assert event.amount == 0
        assert event.block_number == 1200
        assert event.timestamp == datetime(2026, 1, 1, tzinfo=UTC)
        assert event.protocol == SUBSCRIPTION_PROTOCOL
        assert event.tx_hash == "0xdead"

    def test_cancelled(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(subscribed_raw(entity=ENTITY_CANCELLED))
        assert event.kind == EventKind.CANCELLED
        assert event.id.startswith(f"{ENTITY_CANCELLED}:")

    def test_source_id_qualifies_id(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(subscribed_raw(), source_id="mainnet-subs")
        assert event.id == "mainnet-subs:0xabc-1"
        assert event.source_id == "mainnet-subs"

    def test_gas_cost_from_gas_fields(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(subscribed_raw(gasUsed="21000", gasPrice="30"))
        assert event.gas_cost == 630_000

    def test_gas_cost_is_zero_without_gas_fields(self, normalizer: EventNormalizer) -> None:
        assert normalizer.normalize(subscribed_raw()).gas_cost == 0


class TestTransferEvents:
    def test_two_party_transfer(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(transfer_raw())

        assert event.kind == EventKind.TRANSFER
        assert event.wallet_address == SENDER
        assert event.counterparty_address == RECEIVER
        assert list(event.addresses) == [SENDER, RECEIVER]
        assert event.amount == 500
        assert event.protocol == TRANSFER_PROTOCOL
        assert event.is_large is False

    def test_large_transfer_by_threshold(self, normalizer: EventNormalizer) -> None:
        assert normalizer.normalize(transfer_raw(value="1000")).is_large is True

    def test_large_transfer_flag_from_indexer(self, normalizer: EventNormalizer) -> None:
        assert normalizer.normalize(transfer_raw(isLargeTransfer=True)).is_large is True

    def test_mint_credits_receiver_only(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(transfer_raw(**{"from": NULL_ADDRESS}))
        assert event.wallet_address == RECEIVER
        assert event.counterparty_address is None
        assert list(event.addresses) == [RECEIVER]

    def test_burn_credits_sender_only(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(transfer_raw(to=NULL_ADDRESS))
        assert list(event.addresses) == [SENDER]

    def test_self_transfer_touches_one_wallet(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(transfer_raw(to=SENDER))
        assert list(event.addresses) == [SENDER]

    def test_null_to_null_rejected(self, normalizer: EventNormalizer) -> None:
        with pytest.raises(NormalizationError):
            normalizer.normalize(transfer_raw(**{"from": NULL_ADDRESS, "to": NULL_ADDRESS}))


class TestDexTrades:
    def test_dex_trade(self, normalizer: EventNormalizer) -> None:
        event = normalizer.normalize(
            {
                "entity": ENTITY_DEX_TRADE,
                "id": "t-1",
                "trader": SENDER,
                "amountIn": "2500",
                "amountOut": "10",
                "dexProtocol": "UniswapV3",
                "blockNumber": "10",
                "timestamp": "2026-01-01T00:00:00Z",
            }
        )
        assert event.kind == EventKind.DEX_TRADE
        assert event.amount == 2500
        assert event.protocol == "uniswapv3"
        assert event.is_large is True
        assert event.timestamp == datetime(2026, 1, 1, tzinfo=UTC)


class TestMalformedRecords:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"id": None},
            {"subscriber": None},
            {"subscriber": "not-an-address"},
            {"blockNumber": "12a"},
            {"timestamp": "yesterday"},
            {"entity": "UnknownEntity"},
        ],
    )
    def test_rejected(self, normalizer: EventNormalizer, overrides: dict[str, object]) -> None:
        with pytest.raises(NormalizationError):
            normalizer.normalize(subscribed_raw(**overrides))

    def test_negative_value_rejected(self, normalizer: EventNormalizer) -> None:
        with pytest.raises(NormalizationError, match="non-negative"):
            normalizer.normalize(transfer_raw(value="-5"))

    def test_error_carries_raw_id(self, normalizer: EventNormalizer) -> None:
        with pytest.raises(NormalizationError) as exc_info:
            normalizer.normalize(transfer_raw(value="abc"))
        assert exc_info.value.raw_id == "0xabc-2"

    def test_batch_drops_malformed(self, normalizer: EventNormalizer) -> None:
        batch = normalizer.normalize_batch(
            [subscribed_raw(), transfer_raw(value=None), transfer_raw(id="ok")],
            source_id=None,
        )
        assert [e.id for e in batch.events] == [
            f"{ENTITY_SUBSCRIBED}:0xabc-1",
            f"{ENTITY_TRANSFER}:ok",
        ]
        assert len(batch.errors) == 1
        assert batch.errors[0].raw_id == "0xabc-2"


class TestParsers:
    def test_parse_amount_handles_uint256(self) -> None:
        big = str(2**256 - 1)
        assert parse_amount(big, field_name="value", raw_id=None) == 2**256 - 1

    def test_parse_amount_rejects_bool(self) -> None:
        with pytest.raises(NormalizationError):
            parse_amount(True, field_name="value", raw_id=None)

    def test_parse_timestamp_naive_iso_is_utc(self) -> None:
        assert parse_timestamp("2026-01-01T00:00:00", raw_id=None) == datetime(2026, 1, 1, tzinfo=UTC)
