"""Tests for the wallet aggregator."""

import asyncio
import random
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from smart_money_tracker.aggregator.models import AppliedEvent, LoadedWallet, WalletState
from smart_money_tracker.aggregator.wallets import KeyedLocks, WalletAggregator, fold_event
from smart_money_tracker.detector.classifier import Classifier
from smart_money_tracker.detector.models import (
    TAG_ACTIVE_TRADER,
    TAG_HIGH_GAS_USER,
    TAG_SUBSCRIBER,
    TAG_WHALE,
    Thresholds,
)
from smart_money_tracker.detector.scorer import ScoreCalculator
from smart_money_tracker.ingestor.models import SUBSCRIPTION_PROTOCOL, EventKind

THRESHOLDS = Thresholds(whale_volume=100_000, high_gas=10**6, large_transfer=1_000)


@pytest.fixture
def aggregator(t0) -> WalletAggregator:
    return WalletAggregator(
        Classifier(THRESHOLDS),
        ScoreCalculator(THRESHOLDS),
        clock=lambda: t0 + timedelta(hours=1),
    )


class TestApply:
    @pytest.mark.asyncio
    async def test_first_event_creates_wallet(self, aggregator, make_event, wallet_a, t0) -> None:
        [update] = await aggregator.apply(make_event(amount=500))

        assert update.applied is True
        assert update.state.address == wallet_a
        assert update.state.total_volume == 500
        assert update.state.transaction_count == 1
        assert update.state.first_seen == t0
        assert update.state.last_active == t0
        assert update.state.protocols == frozenset({"uniswap"})
        assert aggregator.get(wallet_a) == update.state

    @pytest.mark.asyncio
    async def test_duplicate_event_is_skipped(self, aggregator, make_event) -> None:
        event = make_event(amount=500)
        await aggregator.apply(event)
        [update] = await aggregator.apply(event)

        assert update.applied is False
        assert update.state.transaction_count == 1
        assert update.state.total_volume == 500

    @pytest.mark.asyncio
    async def test_transfer_updates_both_parties(self, aggregator, make_event, wallet_a, wallet_b) -> None:
        updates = await aggregator.apply(
            make_event(kind=EventKind.TRANSFER, counterparty=wallet_b, amount=2_000, is_large=True)
        )

        assert [u.state.address for u in updates] == [wallet_a, wallet_b]
        for update in updates:
            assert update.state.total_volume == 2_000
            assert update.state.large_transfer_count == 1

    @pytest.mark.asyncio
    async def test_out_of_order_timestamps_widen_window(self, aggregator, make_event, t0) -> None:
        await aggregator.apply(make_event("1", timestamp=t0))
        await aggregator.apply(make_event("2", timestamp=t0 - timedelta(days=2)))
        [update] = await aggregator.apply(make_event("3", timestamp=t0 - timedelta(days=1)))

        assert update.state.first_seen == t0 - timedelta(days=2)
        assert update.state.last_active == t0

    @pytest.mark.asyncio
    async def test_volume_and_count_never_decrease(self, aggregator, make_event, wallet_a) -> None:
        previous = WalletState(address=wallet_a)
        for i in range(30):
            event = make_event(str(i % 20), amount=random.randint(0, 10_000))
            [update] = await aggregator.apply(event)
            assert update.state.total_volume >= previous.total_volume
            assert update.state.transaction_count >= previous.transaction_count
            previous = update.state
        assert previous.transaction_count == 20

    @pytest.mark.asyncio
    async def test_whale_by_transaction_count(self, aggregator, make_event) -> None:
        """120 small trades make a whale through the tx-count rule alone."""
        for i in range(120):
            [update] = await aggregator.apply(make_event(str(i), amount=1))

        assert update.state.transaction_count == 120
        assert update.state.total_volume == 120
        assert update.state.is_whale is True
        assert TAG_WHALE in update.state.tags
        assert TAG_ACTIVE_TRADER in update.state.tags

    @pytest.mark.asyncio
    async def test_high_gas_tag(self, aggregator, make_event) -> None:
        [update] = await aggregator.apply(make_event(gas_cost=10**6))
        assert update.state.tags == (TAG_WHALE, TAG_HIGH_GAS_USER)

    @pytest.mark.asyncio
    async def test_subscriber_tag(self, aggregator, make_event) -> None:
        [update] = await aggregator.apply(
            make_event(source_id="SubscriptionService_Subscribed", kind=EventKind.SUBSCRIBED, protocol=SUBSCRIPTION_PROTOCOL)
        )
        assert TAG_SUBSCRIBER in update.state.tags

    @pytest.mark.asyncio
    async def test_score_follows_state(self, aggregator, make_event) -> None:
        [update] = await aggregator.apply(make_event(amount=500))
        expected = ScoreCalculator(THRESHOLDS).compute(update.state, now=update.score.last_updated)
        assert update.score == expected


class TestRestart:
    @pytest.mark.asyncio
    async def test_redelivery_after_restart_is_idempotent(self, make_event, wallet_a, t0) -> None:
        """The same event delivered before and after a restart counts once."""
        event = make_event(
            "sub-1", source_id="SubscriptionService_Subscribed", kind=EventKind.SUBSCRIBED, amount=0
        )
        first = WalletAggregator(Classifier(THRESHOLDS), ScoreCalculator(THRESHOLDS))
        [before] = await first.apply(event)
        assert before.state.transaction_count == 1

        loader = AsyncMock(
            return_value=LoadedWallet(
                state=before.state,
                applied=(AppliedEvent.for_wallet(event, wallet_a),),
            )
        )
        restarted = WalletAggregator(Classifier(THRESHOLDS), ScoreCalculator(THRESHOLDS), loader=loader)
        [after] = await restarted.apply(event)

        assert after.applied is False
        assert after.state.transaction_count == 1
        loader.assert_awaited_once_with(wallet_a)

    @pytest.mark.asyncio
    async def test_loader_miss_starts_empty(self, make_event) -> None:
        loader = AsyncMock(return_value=None)
        aggregator = WalletAggregator(Classifier(THRESHOLDS), ScoreCalculator(THRESHOLDS), loader=loader)
        [update] = await aggregator.apply(make_event())
        assert update.state.transaction_count == 1

    @pytest.mark.asyncio
    async def test_loader_called_once_per_wallet(self, make_event) -> None:
        loader = AsyncMock(return_value=None)
        aggregator = WalletAggregator(Classifier(THRESHOLDS), ScoreCalculator(THRESHOLDS), loader=loader)
        await aggregator.apply_batch([make_event(str(i)) for i in range(10)])
        assert loader.await_count == 1


class TestApplyBatch:
    @pytest.mark.asyncio
    async def test_matches_sequential_application(self, make_event, t0) -> None:
        wallets = ["0x" + f"{i:040x}" for i in range(1, 9)]
        events = [
            make_event(str(i), wallet=wallets[i % len(wallets)], amount=i, timestamp=t0 + timedelta(minutes=i))
            for i in range(200)
        ]
        # Re-deliveries inside the batch.
        events += events[:25]

        sequential = WalletAggregator(Classifier(THRESHOLDS), ScoreCalculator(THRESHOLDS))
        for event in events:
            await sequential.apply(event)
        concurrent = WalletAggregator(Classifier(THRESHOLDS), ScoreCalculator(THRESHOLDS), max_concurrency=4)
        updates = await concurrent.apply_batch(events)

        assert len(updates) == len(events)
        assert sum(1 for u in updates if not u.applied) == 25
        for wallet in wallets:
            assert concurrent.get(wallet) == sequential.get(wallet)

    @pytest.mark.asyncio
    async def test_per_wallet_order_preserved(self, make_event, wallet_a) -> None:
        order: list[str] = []

        class RecordingScorer(ScoreCalculator):
            def compute(self, state, *, now=None):
                order.append(str(state.transaction_count))
                return super().compute(state, now=now)

        aggregator = WalletAggregator(Classifier(THRESHOLDS), RecordingScorer(THRESHOLDS))
        await aggregator.apply_batch([make_event(str(i)) for i in range(5)])
        assert order == ["1", "2", "3", "4", "5"]

    @pytest.mark.asyncio
    async def test_failure_propagates_after_all_queues_settle(self, make_event, wallet_b) -> None:
        async def loader(address: str):
            if address == wallet_b:
                raise RuntimeError("database down")
            await asyncio.sleep(0)
            return None

        aggregator = WalletAggregator(Classifier(THRESHOLDS), ScoreCalculator(THRESHOLDS), loader=loader)
        with pytest.raises(RuntimeError, match="database down"):
            await aggregator.apply_batch([make_event("1"), make_event("2", wallet=wallet_b)])

    @pytest.mark.asyncio
    async def test_empty_batch(self, aggregator) -> None:
        assert await aggregator.apply_batch([]) == []

    def test_rejects_zero_concurrency(self) -> None:
        with pytest.raises(ValueError):
            WalletAggregator(Classifier(), ScoreCalculator(), max_concurrency=0)


class TestPendingWrites:
    @pytest.mark.asyncio
    async def test_flush_cycle(self, aggregator, make_event, wallet_a, wallet_b) -> None:
        await aggregator.apply(make_event("1", counterparty=wallet_b, kind=EventKind.TRANSFER))
        pending = aggregator.pending_writes()

        assert [s.address for s in pending.states] == [wallet_a, wallet_b]
        assert {(a.event_id, a.wallet_address) for a in pending.applied} == {
            ("DEXTrade:1", wallet_a),
            ("DEXTrade:1", wallet_b),
        }

        aggregator.mark_flushed()
        assert not aggregator.pending_writes()

    @pytest.mark.asyncio
    async def test_discard_evicts_touched_wallets(self, aggregator, make_event, wallet_a) -> None:
        await aggregator.apply(make_event("1"))
        aggregator.discard_pending()

        assert aggregator.get(wallet_a) is None
        assert not aggregator.pending_writes()
        # Replay applies again because nothing was persisted.
        [update] = await aggregator.apply(make_event("1"))
        assert update.applied is True

    @pytest.mark.asyncio
    async def test_prune_applied_below_block(self, aggregator, make_event) -> None:
        await aggregator.apply(make_event("1", block=10))
        await aggregator.apply(make_event("2", block=20))
        await aggregator.apply(make_event("3", block=20, source_id="TokenTransfer"))

        assert aggregator.prune_applied("DEXTrade", before_block=20) == 1
        [update] = await aggregator.apply(make_event("2", block=20))
        assert update.applied is False


def test_fold_event_accumulates(make_event, wallet_a, t0) -> None:
    state = WalletState.empty(wallet_a, seen_at=t0)
    folded = fold_event(state, make_event(amount=7, gas_cost=3, is_large=True))

    assert folded.total_volume == 7
    assert folded.transaction_count == 1
    assert folded.max_gas_cost == 3
    assert folded.large_transfer_count == 1
    assert folded.tags == ()


@pytest.mark.asyncio
async def test_keyed_locks_are_released() -> None:
    locks = KeyedLocks()
    async with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0
