"""Wallet aggregator: folds canonical events into per-wallet running state.

The aggregator is the single writer of WalletState. Every mutation goes
through :meth:`WalletAggregator.apply`, which:

1. Loads the wallet (memory, then the injected loader, else a fresh state)
2. Skips the event if its id was already applied to that wallet
3. Accumulates volume/count and widens the first/last-seen window
4. Re-derives tags and whale status through the classifier
5. Recomputes the score

Per-address updates are serialized with keyed locks; distinct addresses
are processed in parallel by :meth:`WalletAggregator.apply_batch`.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from smart_money_tracker.aggregator.models import (
    AppliedEvent,
    LoadedWallet,
    PendingWrites,
    WalletState,
)
from smart_money_tracker.detector.classifier import Classifier
from smart_money_tracker.detector.models import Classification, ScoreRecord
from smart_money_tracker.detector.scorer import ScoreCalculator
from smart_money_tracker.ingestor.models import CanonicalEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 16

WalletLoader = Callable[[str], Awaitable[LoadedWallet | None]]
Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class WalletUpdate:
    """Outcome of applying one event to one wallet."""

    state: WalletState
    score: ScoreRecord
    classification: Classification
    applied: bool


class KeyedLocks:
    """One asyncio.Lock per key, dropped once no task holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def fold_event(state: WalletState, event: CanonicalEvent) -> WalletState:
    """Accumulate ``event`` into ``state`` (tags not yet re-derived)."""
    first_seen = state.first_seen
    if first_seen is None or event.timestamp < first_seen:
        first_seen = event.timestamp
    last_active = state.last_active
    if last_active is None or event.timestamp > last_active:
        last_active = event.timestamp

    protocols = state.protocols
    if event.protocol and event.protocol not in protocols:
        protocols = protocols | {event.protocol}

    return dataclasses.replace(
        state,
        total_volume=state.total_volume + event.amount,
        transaction_count=state.transaction_count + 1,
        first_seen=first_seen,
        last_active=last_active,
        protocols=protocols,
        max_gas_cost=max(state.max_gas_cost, event.gas_cost),
        large_transfer_count=state.large_transfer_count + (1 if event.is_large else 0),
    )


class WalletAggregator:
    """In-memory WalletState table with idempotent event application.

    Example:
        ```python
        aggregator = WalletAggregator(Classifier(thresholds), ScoreCalculator(thresholds))
        updates = await aggregator.apply_batch(events)
        pending = aggregator.pending_writes()
        # persist pending.states / pending.applied, then:
        aggregator.mark_flushed()
        ```
    """

    def __init__(
        self,
        classifier: Classifier,
        scorer: ScoreCalculator,
        *,
        loader: WalletLoader | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Clock = _utc_now,
    ) -> None:
        """Initialize the aggregator.

        Args:
            classifier: Derives tags/whale status after each mutation.
            scorer: Recomputes the score after each mutation.
            loader: Loads persisted state on a cache miss.
            max_concurrency: Addresses processed in parallel by apply_batch.
            clock: Reference time for score recency.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._classifier = classifier
        self._scorer = scorer
        self._loader = loader
        self._max_concurrency = max_concurrency
        self._clock = clock

        self._states: dict[str, WalletState] = {}
        # address -> event_id -> (source_id, block_number)
        self._applied: dict[str, dict[str, tuple[str, int]]] = {}
        self._locks = KeyedLocks()
        self._dirty: set[str] = set()
        self._new_applied: list[AppliedEvent] = []

    def get(self, address: str) -> WalletState | None:
        """Cached state of ``address`` (no loader call)."""
        return self._states.get(address.lower())

    def __len__(self) -> int:
        return len(self._states)

    async def apply(self, event: CanonicalEvent) -> list[WalletUpdate]:
        """Apply ``event`` to its wallet and, for transfers, its counterparty.

        Returns:
            One update per touched wallet; ``applied`` is False for duplicates.
        """
        return [await self._apply_to(address, event) for address in event.addresses]

    async def apply_batch(self, events: Iterable[CanonicalEvent]) -> list[WalletUpdate]:
        """Apply a batch of events.

        Events are partitioned into per-address queues. Each queue is
        drained in delivery order; different queues run concurrently,
        bounded by ``max_concurrency``.
        """
        queues: dict[str, list[CanonicalEvent]] = {}
        for event in events:
            for address in event.addresses:
                queues.setdefault(address, []).append(event)
        if not queues:
            return []

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def drain(address: str, queue: list[CanonicalEvent]) -> list[WalletUpdate]:
            async with semaphore:
                return [await self._apply_to(address, event) for event in queue]

        # Every queue settles before a failure propagates.
        results = await asyncio.gather(*(drain(a, q) for a, q in queues.items()), return_exceptions=True)
        updates: list[WalletUpdate] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            updates.extend(result)
        return updates

    async def _apply_to(self, address: str, event: CanonicalEvent) -> WalletUpdate:
        async with self._locks.hold(address):
            state = await self._ensure_loaded(address, event)
            applied_ids = self._applied.setdefault(address, {})
            now = self._clock()

            if event.id in applied_ids:
                logger.debug("Skipping already-applied event %s for %s", event.id, address)
                score = self._scorer.compute(state, now=now)
                return WalletUpdate(
                    state=state,
                    score=score,
                    classification=self._classifier.classify(state, score),
                    applied=False,
                )

            folded = fold_event(state, event)
            derived = self._classifier.classify(folded)
            new_state = dataclasses.replace(folded, tags=derived.tags, is_whale=derived.is_whale)

            self._states[address] = new_state
            applied_ids[event.id] = (event.source_id, event.block_number)
            self._dirty.add(address)
            self._new_applied.append(AppliedEvent.for_wallet(event, address))

            if new_state.is_whale and not state.is_whale:
                logger.info("Wallet %s classified as whale (tags=%s)", address, ",".join(new_state.tags))

            score = self._scorer.compute(new_state, now=now)
            return WalletUpdate(
                state=new_state,
                score=score,
                classification=self._classifier.classify(new_state, score),
                applied=True,
            )

    async def _ensure_loaded(self, address: str, event: CanonicalEvent) -> WalletState:
        state = self._states.get(address)
        if state is not None:
            return state

        loaded = await self._loader(address) if self._loader else None
        if loaded is None:
            state = WalletState.empty(address, seen_at=event.timestamp)
            self._applied[address] = {}
        else:
            state = loaded.state
            self._applied[address] = {
                a.event_id: (a.source_id, a.block_number) for a in loaded.applied
            }
        self._states[address] = state
        return state

    def pending_writes(self) -> PendingWrites:
        """Snapshots and applied ids changed since the last flush."""
        return PendingWrites(
            states=[self._states[a] for a in sorted(self._dirty) if a in self._states],
            applied=list(self._new_applied),
        )

    def mark_flushed(self) -> None:
        """Record that pending writes were durably persisted."""
        self._dirty.clear()
        self._new_applied.clear()

    def discard_pending(self) -> None:
        """Drop unpersisted changes.

        Touched wallets are evicted so they reload from durable state on
        next use; the failed batch can then be replayed.
        """
        for address in self._dirty:
            self._states.pop(address, None)
            self._applied.pop(address, None)
        for applied in self._new_applied:
            self._states.pop(applied.wallet_address, None)
            self._applied.pop(applied.wallet_address, None)
        self._dirty.clear()
        self._new_applied.clear()

    def prune_applied(self, source_id: str, *, before_block: int) -> int:
        """Forget applied ids of ``source_id`` below the committed checkpoint."""
        pruned = 0
        for applied_ids in self._applied.values():
            stale = [
                event_id
                for event_id, (src, block) in applied_ids.items()
                if src == source_id and block < before_block
            ]
            for event_id in stale:
                del applied_ids[event_id]
            pruned += len(stale)
        if pruned:
            logger.debug("Pruned %d applied ids for %s below block %d", pruned, source_id, before_block)
        return pruned
