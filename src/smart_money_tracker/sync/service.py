"""Materialization/sync service.

This module provides a background service that upserts wallet and score
documents for every wallet whose durable state changed since it was last
materialized, then commits the checkpoints staged by the ingest loop.

Wallet state is read from the durable outbox (``version > synced_version``)
rather than from the aggregator, so ingestion never waits on the
downstream store and a failed pass loses nothing.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from redis.asyncio import Redis
from redis.exceptions import RedisError

from smart_money_tracker.detector.classifier import Classifier
from smart_money_tracker.detector.scorer import ScoreCalculator
from smart_money_tracker.storage.checkpoints import CheckpointTracker
from smart_money_tracker.storage.database import DatabaseManager
from smart_money_tracker.storage.repos import WalletStateDTO, WalletStateRepository
from smart_money_tracker.sync.documents import score_document, wallet_document
from smart_money_tracker.sync.store import (
    SCORES_COLLECTION,
    WALLETS_COLLECTION,
    DocumentStore,
    DocumentWriteError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_SYNC_INTERVAL_SECONDS = 30.0
DEFAULT_BATCH_SIZE = 200
DEFAULT_RECONCILE_INTERVAL_SECONDS = 3600.0
DEFAULT_LEASE_TTL_SECONDS = 120
DEFAULT_STOP_TIMEOUT_SECONDS = 60.0
DEFAULT_LEASE_KEY = "smart_money:sync:lease"

# Deletes the lease only if this process still owns it.
_RELEASE_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SyncState(str, Enum):
    """State of the materialization service."""

    STOPPED = "stopped"
    STARTING = "starting"
    SYNCING = "syncing"
    IDLE = "idle"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SyncStats:
    """Statistics for the sync process."""

    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    skipped_syncs: int = 0
    documents_synced: int = 0
    document_errors: int = 0
    reconciliations: int = 0
    last_sync_time: datetime | None = None
    last_sync_duration_seconds: float = 0.0
    last_reconcile_time: datetime | None = None
    last_error: str | None = None


@dataclass
class SyncResult:
    """Outcome of one sync pass.

    Attributes:
        synced: Documents written successfully.
        errors: Non-fatal per-document failures.
        skipped: True when another process held the sync lease.
        committed_sources: Sources whose staged checkpoint was committed.
    """

    synced: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    committed_sources: list[str] = field(default_factory=list)


StateCallback = Callable[[SyncState], None]
PageFetcher = Callable[[str | None], Awaitable[list[WalletStateDTO]]]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class MaterializationService:
    """Background service that materializes dirty wallets.

    This service:
    - Runs a pass every ``interval_seconds`` or as soon as :meth:`trigger` is called
    - Upserts one wallet document and one score document per dirty wallet
    - Accumulates per-document failures without aborting the pass
    - Commits staged checkpoints once the pass completes
    - Re-materializes recently updated wallets every ``reconcile_interval_seconds``

    A connectivity failure aborts the pass (nothing is committed) and the
    next tick retries. When Redis is configured a ``SET NX EX`` lease keeps
    passes from overlapping across processes.

    Example:
        ```python
        service = MaterializationService(db, store, tracker, classifier, scorer)
        await service.start()
        service.trigger()
        ...
        await service.stop()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        store: DocumentStore,
        tracker: CheckpointTracker,
        classifier: Classifier,
        scorer: ScoreCalculator,
        *,
        redis: Redis | None = None,
        interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        reconcile_interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
        lease_key: str = DEFAULT_LEASE_KEY,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
        on_state_change: StateCallback | None = None,
    ) -> None:
        """Initialize the sync service.

        Args:
            db: Core database holding the wallet-state outbox.
            store: Downstream document store.
            tracker: Checkpoint tracker holding staged positions.
            classifier: Re-derives tags (including score-based ones).
            scorer: Recomputes scores as of the pass.
            redis: Optional Redis client for the cross-process lease.
            interval_seconds: Periodic pass interval.
            batch_size: Dirty wallets read per page.
            reconcile_interval_seconds: Drift-repair cadence.
            lease_ttl_seconds: Lease expiry.
            lease_key: Redis key of the lease.
            stop_timeout_seconds: Grace period for the in-flight pass on stop.
            clock: Reference time for scores and timestamps.
            on_state_change: Callback for state changes.
        """
        self._db = db
        self._store = store
        self._tracker = tracker
        self._classifier = classifier
        self._scorer = scorer
        self._redis = redis
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._reconcile_interval = reconcile_interval_seconds
        self._lease_ttl = lease_ttl_seconds
        self._lease_key = lease_key
        self._stop_timeout = stop_timeout_seconds
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = SyncState.STOPPED
        self._stats = SyncStats()
        self._store_available: bool | None = None
        self._last_reconcile_at: datetime | None = None
        self._pass_lock = asyncio.Lock()
        self._wake_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._sync_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SyncState:
        """Current sync state."""
        return self._state

    @property
    def stats(self) -> SyncStats:
        """Current sync statistics."""
        return self._stats

    @property
    def store_available(self) -> bool | None:
        """Whether the last pass reached the store (None before the first pass)."""
        return self._store_available

    def _set_state(self, new_state: SyncState) -> None:
        """Update state and notify callback."""
        old_state = self._state
        self._state = new_state
        if self._on_state_change and old_state != new_state:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.warning("State change callback failed: %s", e)

    def _settle_state(self) -> None:
        # One-off passes outside the loop leave the service stopped.
        if self._state == SyncState.STOPPING:
            return
        self._set_state(SyncState.IDLE if self._sync_task is not None else SyncState.STOPPED)

    def trigger(self) -> None:
        """Request a pass without waiting for the next interval."""
        self._wake_event.set()

    async def start(self) -> None:
        """Start the background sync loop; the first pass runs immediately."""
        if self._sync_task is not None:
            logger.warning("Cannot start sync: already in state %s", self._state)
            return

        self._set_state(SyncState.STARTING)
        self._stop_event.clear()
        self._wake_event.set()
        self._sync_task = asyncio.create_task(self._sync_loop())
        self._set_state(SyncState.IDLE)
        logger.info("Materialization sync started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight pass finish first."""
        if self._sync_task is None:
            return

        self._set_state(SyncState.STOPPING)
        self._stop_event.set()
        self._wake_event.set()

        if self._sync_task:
            done, _ = await asyncio.wait({self._sync_task}, timeout=self._stop_timeout)
            if not done:
                logger.warning("Sync pass did not finish within %.1fs; cancelling", self._stop_timeout)
                self._sync_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._sync_task
            self._sync_task = None

        self._set_state(SyncState.STOPPED)
        logger.info("Materialization sync stopped")

    async def _sync_loop(self) -> None:
        """Background loop that runs passes on trigger or interval."""
        while not self._stop_event.is_set():
            try:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake_event.wait(), timeout=self._interval)
                if self._stop_event.is_set():
                    break
                self._wake_event.clear()

                await self.sync_pending()
                if self._reconcile_due():
                    await self.reconcile()

            except asyncio.CancelledError:
                break
            except Exception as e:
                # Retried on the next tick.
                logger.error("Sync loop error: %s", e)
                self._stats.last_error = str(e)
                self._set_state(SyncState.ERROR)

    def _reconcile_due(self) -> bool:
        if self._last_reconcile_at is None:
            return True
        elapsed = (self._clock() - self._last_reconcile_at).total_seconds()
        return elapsed >= self._reconcile_interval

    async def sync_batch(self, source_id: str | None = None) -> SyncResult:
        """Materialize every dirty wallet, then commit staged checkpoints.

        Args:
            source_id: Commit only this source's staged checkpoint (all when None).

        Raises:
            StoreUnavailableError: If the store is unreachable; nothing is committed.
        """
        async with self._pass_lock, self._lease() as acquired:
            if not acquired:
                self._stats.skipped_syncs += 1
                logger.info("Sync lease held elsewhere; skipping pass")
                return SyncResult(skipped=True)

            started = self._clock()
            self._set_state(SyncState.SYNCING)
            self._stats.total_syncs += 1
            # Taken before reading the outbox: everything staged so far is already durable.
            snapshot = self._tracker.staged(source_id)

            try:
                result = await self._materialize_pages(self._dirty_page)
            except Exception as e:
                self._record_failure(e)
                raise

            result.committed_sources = await self._tracker.commit_staged(snapshot)

            finished = self._clock()
            self._stats.successful_syncs += 1
            self._stats.documents_synced += result.synced
            self._stats.document_errors += len(result.errors)
            self._stats.last_sync_time = finished
            self._stats.last_sync_duration_seconds = (finished - started).total_seconds()
            self._stats.last_error = result.errors[-1] if result.errors else None
            self._settle_state()

            if result.synced or result.errors or result.committed_sources:
                logger.info(
                    "Synced %d documents (%d errors, committed=%s) in %.2fs",
                    result.synced,
                    len(result.errors),
                    ",".join(result.committed_sources) or "-",
                    self._stats.last_sync_duration_seconds,
                )
            return result

    async def sync_pending(self) -> SyncResult:
        """Run one :meth:`sync_batch` per staged source (one pass when none is staged).

        Raises:
            StoreUnavailableError: If the store is unreachable.
        """
        sources = self._tracker.staged_sources
        if not sources:
            return await self.sync_batch(None)

        total = SyncResult()
        for source_id in sources:
            result = await self.sync_batch(source_id)
            total.synced += result.synced
            total.errors.extend(result.errors)
            total.skipped = total.skipped or result.skipped
            total.committed_sources.extend(result.committed_sources)
        return total

    async def reconcile(self) -> SyncResult:
        """Re-materialize wallets updated since the previous reconciliation.

        Covers drift and missed triggers regardless of the dirty flag. The
        first reconciliation covers every wallet.

        Raises:
            StoreUnavailableError: If the store is unreachable.
        """
        async with self._pass_lock, self._lease() as acquired:
            if not acquired:
                self._stats.skipped_syncs += 1
                return SyncResult(skipped=True)

            started = self._clock()
            since = self._last_reconcile_at
            self._set_state(SyncState.SYNCING)

            async def updated_page(after: str | None) -> list[WalletStateDTO]:
                async with self._db.get_async_session() as session:
                    return await WalletStateRepository(session).list_updated_since(
                        since, after_address=after, limit=self._batch_size
                    )

            try:
                result = await self._materialize_pages(updated_page)
            except Exception as e:
                self._record_failure(e)
                raise

            self._last_reconcile_at = started
            self._stats.reconciliations += 1
            self._stats.last_reconcile_time = self._clock()
            self._settle_state()
            logger.info("Reconciled %d documents (%d errors)", result.synced, len(result.errors))
            return result

    def _record_failure(self, error: Exception) -> None:
        self._stats.failed_syncs += 1
        self._stats.last_error = str(error)
        if isinstance(error, StoreUnavailableError):
            self._store_available = False
        self._set_state(SyncState.ERROR)
        logger.error("Sync pass failed: %s", error)

    async def _dirty_page(self, after: str | None) -> list[WalletStateDTO]:
        async with self._db.get_async_session() as session:
            return await WalletStateRepository(session).list_dirty(after_address=after, limit=self._batch_size)

    async def _materialize_pages(self, fetch_page: PageFetcher) -> SyncResult:
        await self._store.ping()
        self._store_available = True

        result = SyncResult()
        after: str | None = None
        while True:
            page = await fetch_page(after)
            if not page:
                break

            now = self._clock()
            complete: list[WalletStateDTO] = []
            for dto in page:
                written, failed = await self._materialize_wallet(dto, now, result.errors)
                result.synced += written
                if not failed:
                    complete.append(dto)

            # Partially written wallets stay dirty for the next pass.
            if complete:
                async with self._db.get_async_session() as session:
                    repo = WalletStateRepository(session)
                    for dto in complete:
                        await repo.mark_synced(dto.address, dto.version, synced_at=now)

            after = page[-1].address
            if len(page) < self._batch_size:
                break
        return result

    async def _materialize_wallet(
        self, dto: WalletStateDTO, now: datetime, errors: list[str]
    ) -> tuple[int, int]:
        """Upsert the wallet and score documents; returns (written, failed)."""
        state = dto.to_state()
        derived = self._classifier.classify(state)
        state = dataclasses.replace(state, tags=derived.tags, is_whale=derived.is_whale)
        score = self._scorer.compute(state, now=now)
        classification = self._classifier.classify(state, score)

        documents = (
            (WALLETS_COLLECTION, state.address, wallet_document(state, classification, score, synced_at=now)),
            (SCORES_COLLECTION, state.score_id, score_document(score, synced_at=now)),
        )
        written = failed = 0
        for collection, doc_id, document in documents:
            try:
                await self._store.upsert(collection, doc_id, document)
            except DocumentWriteError as e:
                logger.warning("Document write failed: %s", e)
                errors.append(str(e))
                failed += 1
            else:
                written += 1
        return written, failed

    @contextlib.asynccontextmanager
    async def _lease(self) -> AsyncIterator[bool]:
        if self._redis is None:
            yield True
            return

        token = uuid.uuid4().hex
        try:
            acquired = bool(await self._redis.set(self._lease_key, token, nx=True, ex=self._lease_ttl))
        except RedisError as e:
            logger.error("Could not acquire sync lease: %s", e)
            acquired = False

        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self._redis.eval(_RELEASE_LEASE_SCRIPT, 1, self._lease_key, token)
                except RedisError as e:
                    logger.warning("Could not release sync lease (expires in %ds): %s", self._lease_ttl, e)
