"""Main pipeline orchestrator for the Smart Money Tracker.

This module provides the Pipeline class that wires together the indexer
feed, normalizer, wallet aggregator, durable storage and the
materialization service, and manages the event flow between them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from smart_money_tracker.aggregator.models import LoadedWallet
from smart_money_tracker.aggregator.wallets import WalletAggregator
from smart_money_tracker.config import Settings, get_settings
from smart_money_tracker.detector.classifier import Classifier
from smart_money_tracker.detector.models import Thresholds
from smart_money_tracker.detector.scorer import ScoreCalculator
from smart_money_tracker.ingestor.feed import (
    EnvioGraphQLFeed,
    FeedQueryError,
    FeedUnavailableError,
    IndexerFeed,
    NullFeed,
)
from smart_money_tracker.ingestor.models import NormalizationError
from smart_money_tracker.ingestor.normalizer import EventNormalizer, parse_amount
from smart_money_tracker.storage.checkpoints import CheckpointTracker
from smart_money_tracker.storage.database import DatabaseManager
from smart_money_tracker.storage.models import Base
from smart_money_tracker.storage.repos import (
    AppliedEventRepository,
    CheckpointDTO,
    EventProcessingErrorDTO,
    EventProcessingErrorRepository,
    WalletStateRepository,
)
from smart_money_tracker.sync.service import MaterializationService, SyncResult
from smart_money_tracker.sync.store import DocumentStore, SqlDocumentStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT_SECONDS = 60.0

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    batches_processed: int = 0
    events_processed: int = 0
    wallet_updates: int = 0
    duplicates_skipped: int = 0
    normalization_errors: int = 0
    errors: int = 0
    last_event_time: datetime | None = None
    last_error: str | None = None


@dataclass
class HealthStatus:
    """Snapshot of pipeline health.

    A ``None`` flag means the dependency has not been exercised yet.
    """

    state: PipelineState
    feed_available: bool | None
    store_available: bool | None
    database_available: bool | None
    last_error: str | None = None

    @property
    def degraded(self) -> bool:
        return False in (self.feed_available, self.store_available, self.database_available)


@dataclass
class IngestResult:
    """Outcome of one :meth:`Pipeline.ingest_once` call."""

    source_id: str
    fetched: int = 0
    events: int = 0
    applied: int = 0
    duplicates: int = 0
    errors: list[str] = field(default_factory=list)
    last_block: int | None = None
    caught_up: bool = True


def _raw_block(raw: Mapping[str, Any]) -> int | None:
    value = raw.get("blockNumber")
    if value is None:
        return None
    try:
        return parse_amount(value, field_name="blockNumber", raw_id=None)
    except NormalizationError:
        return None


def next_cursor(
    cursor: tuple[int, int], blocks: Sequence[int], fetched: int
) -> tuple[int, int]:
    """Position after a page ordered by ``(blockNumber, id)``.

    The next read starts at the page's highest block (inclusive) and skips
    the records of that block already seen. A page that never left its
    starting block only advances the offset.
    """
    block, offset = cursor
    if not blocks:
        return block, offset + fetched
    top = max(blocks)
    if top <= block:
        return block, offset + fetched
    return top, sum(1 for b in blocks if b == top)


class Pipeline:
    """Main pipeline orchestrator for the Smart Money Tracker.

    Pipeline flow:
        Indexer feed → Normalizer → Wallet Aggregator → wallet_states (outbox)
        → Materialization service → document store → checkpoint commit

    Ingestion and materialization run as independent tasks joined only by
    the durable outbox and a trigger, so a slow or failing store never
    stalls ingestion.

    Example:
        ```python
        from smart_money_tracker.config import get_settings
        from smart_money_tracker.pipeline import Pipeline

        settings = get_settings()
        pipeline = Pipeline(settings)

        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        feed: IndexerFeed | None = None,
        store: DocumentStore | None = None,
        redis: Redis | None = None,
        clock: Clock = _utc_now,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            feed: Indexer feed override (built from settings when omitted).
            store: Document store override (built from settings when omitted).
            redis: Redis client override (built from settings when omitted).
            clock: Reference time for scores.
            stop_timeout_seconds: Grace period for in-flight work on stop.
        """
        self._settings = settings or get_settings()
        self._feed_override = feed
        self._store_override = store
        self._redis_override = redis
        self._clock = clock
        self._stop_timeout = stop_timeout_seconds

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized lazily)
        self._db_manager: DatabaseManager | None = None
        self._store_db: DatabaseManager | None = None
        self._store: DocumentStore | None = None
        self._redis: Redis | None = None
        self._feed: IndexerFeed | None = None
        self._normalizer: EventNormalizer | None = None
        self._classifier: Classifier | None = None
        self._scorer: ScoreCalculator | None = None
        self._aggregator: WalletAggregator | None = None
        self._tracker: CheckpointTracker | None = None
        self._sync: MaterializationService | None = None

        self._cursors: dict[str, tuple[int, int]] = {}
        self._feed_available: bool | None = None
        self._database_available: bool | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._ingest_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def aggregator(self) -> WalletAggregator | None:
        return self._aggregator

    @property
    def tracker(self) -> CheckpointTracker | None:
        return self._tracker

    @property
    def sync_service(self) -> MaterializationService | None:
        return self._sync

    async def start(self) -> None:
        """Start the pipeline.

        Initializes all components and starts the ingest and sync loops.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        In-flight ingest and sync batches finish before resources are
        released.
        """
        if self._state == PipelineState.STOPPED:
            await self._cleanup()
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components (idempotent)."""
        if self._db_manager is not None:
            return
        settings = self._settings

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url)
        if settings.database.auto_create_schema:
            await self._db_manager.init_schema_async(tables=list(Base.metadata.sorted_tables))

        logger.debug("Initializing document store...")
        if self._store_override is not None:
            self._store = self._store_override
        else:
            if settings.store_url == settings.database.url:
                self._store_db = self._db_manager
            else:
                self._store_db = DatabaseManager(settings.store_url)
            store = SqlDocumentStore(self._store_db)
            if settings.database.auto_create_schema:
                await store.init_schema()
            self._store = store

        if self._redis_override is not None:
            self._redis = self._redis_override
        elif settings.redis.enabled and settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing indexer feed...")
        if self._feed_override is not None:
            self._feed = self._feed_override
        elif settings.indexer.enabled and settings.indexer.graphql_url:
            self._feed = EnvioGraphQLFeed(
                settings.indexer.graphql_url,
                timeout_seconds=settings.indexer.timeout_seconds,
                max_retries=settings.indexer.max_retries,
            )
        else:
            logger.warning("No indexer configured; ingestion is a no-op")
            self._feed = NullFeed()

        logger.debug("Initializing aggregation components...")
        thresholds = Thresholds.from_settings(settings.thresholds)
        self._normalizer = EventNormalizer(large_transfer_threshold=thresholds.large_transfer)
        self._classifier = Classifier(thresholds)
        self._scorer = ScoreCalculator(thresholds)
        self._aggregator = WalletAggregator(
            self._classifier,
            self._scorer,
            loader=self._load_wallet,
            max_concurrency=settings.ingest.max_concurrency,
            clock=self._clock,
        )
        self._tracker = CheckpointTracker(self._db_manager, on_commit=self._on_checkpoint_commit)
        self._sync = MaterializationService(
            self._db_manager,
            self._store,
            self._tracker,
            self._classifier,
            self._scorer,
            redis=self._redis,
            interval_seconds=settings.sync.interval_seconds,
            batch_size=settings.sync.batch_size,
            reconcile_interval_seconds=settings.sync.reconcile_interval_seconds,
            lease_ttl_seconds=settings.sync.lease_ttl_seconds,
            stop_timeout_seconds=self._stop_timeout,
            clock=self._clock,
        )

        logger.info("All components initialized")

    async def _load_wallet(self, address: str) -> LoadedWallet | None:
        if self._db_manager is None:
            raise RuntimeError("Database manager is not initialized")
        async with self._db_manager.get_async_session() as session:
            return await AppliedEventRepository(session).load_wallet(address)

    def _on_checkpoint_commit(self, checkpoint: CheckpointDTO) -> None:
        if self._aggregator is not None:
            self._aggregator.prune_applied(checkpoint.source_id, before_block=checkpoint.last_block)

    async def _start_background_services(self) -> None:
        """Start background services."""
        if self._sync is not None:
            logger.debug("Starting materialization sync service...")
            await self._sync.start()

        logger.debug("Starting ingest loop...")
        self._ingest_task = asyncio.create_task(self._run_ingest_loop())

    async def _stop_background_services(self) -> None:
        """Stop background services, letting in-flight batches finish."""
        if self._ingest_task is not None:
            done, _ = await asyncio.wait({self._ingest_task}, timeout=self._stop_timeout)
            if not done:
                logger.warning("Ingest batch did not finish within %.1fs; cancelling", self._stop_timeout)
                self._ingest_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._ingest_task
            self._ingest_task = None

        if self._sync is not None:
            logger.debug("Stopping materialization sync...")
            await self._sync.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._feed is not None:
            await self._feed.close()
            self._feed = None

        if self._store_db is not None and self._store_db is not self._db_manager:
            await self._store_db.dispose_async()
        self._store_db = None

        # Close database connections
        if self._db_manager is not None:
            await self._db_manager.dispose_async()
            self._db_manager = None

        # Close Redis connection (injected clients belong to the caller)
        if self._redis is not None and self._redis is not self._redis_override:
            await self._redis.aclose()
        self._redis = None

        logger.debug("Resources cleaned up")

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; returns True if stop was requested."""
        if not self._stop_event:
            return True
        if delay <= 0:
            await asyncio.sleep(0)
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except TimeoutError:
            return False

    async def _run_ingest_loop(self) -> None:
        """Round-robin the configured sources until stopped."""
        if not self._stop_event:
            return

        indexer = self._settings.indexer
        backoff = indexer.poll_interval_seconds
        while not self._stop_event.is_set():
            delay = indexer.poll_interval_seconds
            try:
                behind = False
                for source_id in indexer.sources:
                    if self._stop_event.is_set():
                        break
                    try:
                        result = await self.ingest_once(source_id)
                    except FeedQueryError as e:
                        logger.warning("Skipping %s this round: %s", source_id, e)
                        self._stats.errors += 1
                        self._stats.last_error = str(e)
                        continue
                    behind = behind or not result.caught_up
                if behind:
                    delay = 0
                backoff = indexer.poll_interval_seconds
            except asyncio.CancelledError:
                break
            except FeedUnavailableError as e:
                logger.error("Indexer unavailable, retrying in %.1f seconds: %s", backoff, e)
                self._stats.errors += 1
                self._stats.last_error = str(e)
                delay = backoff
                backoff = min(backoff * 2, indexer.max_backoff_seconds)
            except Exception as e:
                logger.error("Ingest loop error, retrying in %.1f seconds: %s", backoff, e)
                self._stats.errors += 1
                self._stats.last_error = str(e)
                delay = backoff
                backoff = min(backoff * 2, indexer.max_backoff_seconds)

            if await self._wait_or_stop(delay):
                break

    async def _cursor(self, source_id: str) -> tuple[int, int]:
        cursor = self._cursors.get(source_id)
        if cursor is None:
            if self._tracker is None:
                raise RuntimeError("Checkpoint tracker is not initialized")
            checkpoint = await self._tracker.get(source_id)
            cursor = (checkpoint.last_block, 0)
            self._cursors[source_id] = cursor
            logger.info("Resuming %s from block %d", source_id, checkpoint.last_block)
        return cursor

    async def ingest_once(self, source_id: str) -> IngestResult:
        """Fetch, normalize, aggregate and persist one page of ``source_id``.

        The page's wallet state, applied ids and normalization errors are
        written in one transaction; only then is the page staged for
        checkpointing and the sync service triggered. On a persistence
        failure the aggregator drops the page so it can be replayed.

        Raises:
            FeedUnavailableError: If the indexer cannot be reached.
            FeedQueryError: If the indexer rejects the query.
            SQLAlchemyError: If durable state cannot be written.
        """
        await self._initialize_components()
        if (
            self._feed is None
            or self._normalizer is None
            or self._aggregator is None
            or self._tracker is None
            or self._db_manager is None
        ):
            raise RuntimeError("Pipeline components are not initialized")

        cursor = await self._cursor(source_id)
        limit = self._settings.indexer.batch_size
        try:
            raws = await self._feed.fetch(source_id, from_block=cursor[0], limit=limit, offset=cursor[1])
        except FeedUnavailableError:
            self._feed_available = False
            raise
        self._feed_available = True

        result = IngestResult(source_id=source_id, fetched=len(raws), caught_up=len(raws) < limit)
        if not raws:
            return result

        batch = self._normalizer.normalize_batch(raws, source_id=source_id)
        result.events = len(batch.events)
        result.errors = [str(e) for e in batch.errors]

        try:
            updates = await self._aggregator.apply_batch(batch.events)
            pending = self._aggregator.pending_writes()
            async with self._db_manager.get_async_session() as session:
                await WalletStateRepository(session).upsert_many(pending.states)
                await AppliedEventRepository(session).insert_many(pending.applied)
                await EventProcessingErrorRepository(session).insert_many(
                    [
                        EventProcessingErrorDTO(
                            source_id=source_id,
                            event_id=e.raw_id,
                            stage="normalize",
                            error_type=type(e).__name__,
                            message=str(e),
                        )
                        for e in batch.errors
                    ]
                )
        except SQLAlchemyError:
            self._database_available = False
            self._aggregator.discard_pending()
            raise
        except Exception:
            self._aggregator.discard_pending()
            raise
        self._aggregator.mark_flushed()
        self._database_available = True

        blocks = [b for b in (_raw_block(r) for r in raws) if b is not None]
        self._cursors[source_id] = next_cursor(cursor, blocks, len(raws))
        result.last_block = max(blocks) if blocks else cursor[0]
        result.applied = sum(1 for u in updates if u.applied)
        result.duplicates = len(updates) - result.applied
        self._tracker.stage(source_id, last_block=result.last_block, count_processed=result.events)

        self._stats.batches_processed += 1
        self._stats.events_processed += result.events
        self._stats.wallet_updates += result.applied
        self._stats.duplicates_skipped += result.duplicates
        self._stats.normalization_errors += len(result.errors)
        if batch.events:
            self._stats.last_event_time = max(e.timestamp for e in batch.events)

        logger.info(
            "Ingested %s: %d records, %d wallet updates, %d duplicates, %d malformed (through block %d)",
            source_id,
            result.fetched,
            result.applied,
            result.duplicates,
            len(result.errors),
            result.last_block,
        )

        if self._sync is not None:
            self._sync.trigger()
        return result

    async def sync_once(self) -> SyncResult:
        """Run one materialization pass over every staged source."""
        await self._initialize_components()
        if self._sync is None:
            raise RuntimeError("Sync service is not initialized")
        return await self._sync.sync_pending()

    async def check_connections(self) -> dict[str, bool]:
        """Ping every configured dependency.

        Returns:
            Mapping of dependency name to reachability.
        """
        await self._initialize_components()
        results: dict[str, bool] = {}

        if self._db_manager is not None:
            try:
                await self._db_manager.ping()
                results["database"] = True
            except (SQLAlchemyError, OSError) as e:
                logger.error("Database check failed: %s", e)
                results["database"] = False
            self._database_available = results["database"]

        if self._store is not None:
            try:
                await self._store.ping()
                results["store"] = True
            except StoreError as e:
                logger.error("Document store check failed: %s", e)
                results["store"] = False

        if self._redis is not None:
            try:
                results["redis"] = bool(await self._redis.ping())
            except (RedisError, OSError) as e:
                logger.error("Redis check failed: %s", e)
                results["redis"] = False

        if self._feed is not None:
            results["feed"] = await self._feed.ping()
            self._feed_available = results["feed"]

        for name, ok in results.items():
            logger.info("Connection check %s: %s", name, "ok" if ok else "FAILED")
        return results

    def health(self) -> HealthStatus:
        """Current health; degraded when a dependency is known to be down."""
        store_available = self._sync.store_available if self._sync is not None else None
        last_error = self._stats.last_error
        if self._sync is not None and self._sync.stats.last_error:
            last_error = last_error or self._sync.stats.last_error
        return HealthStatus(
            state=self._state,
            feed_available=self._feed_available,
            store_available=store_available,
            database_available=self._database_available,
            last_error=last_error,
        )

    def request_stop(self) -> None:
        """Ask :meth:`run` to shut down (safe from signal handlers)."""
        if self._stop_event:
            self._stop_event.set()

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

        This is a convenience method that starts the pipeline and
        blocks until a stop signal is received.

        Example:
            ```python
            pipeline = Pipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
