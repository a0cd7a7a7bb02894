"""Per-source checkpoint tracking.

A batch moves through two positions: once its wallet state is durably
persisted the ingest loop *stages* it, and once the sync service has
materialized everything up to it the staged position is *committed*. Resume
after a restart starts at the committed ``last_block`` (inclusive); events
re-read from that block are absorbed by idempotent apply.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from smart_money_tracker.storage.database import DatabaseManager
from smart_money_tracker.storage.repos import (
    AppliedEventRepository,
    CheckpointDTO,
    CheckpointRepository,
)

logger = logging.getLogger(__name__)

CommitCallback = Callable[[CheckpointDTO], None]


@dataclass(frozen=True)
class StagedCheckpoint:
    """A durably applied position waiting for sync."""

    last_block: int
    count_processed: int


class CheckpointTracker:
    """Reads and commits per-source checkpoints.

    Example:
        ```python
        tracker = CheckpointTracker(db, on_commit=lambda cp: aggregator.prune_applied(
            cp.source_id, before_block=cp.last_block
        ))
        checkpoint = await tracker.get("TokenTransfer")
        tracker.stage("TokenTransfer", last_block=1200, count_processed=500)
        await tracker.commit_staged(tracker.staged())
        ```
    """

    def __init__(self, db: DatabaseManager, *, on_commit: CommitCallback | None = None) -> None:
        self._db = db
        self._on_commit = on_commit
        self._staged: dict[str, StagedCheckpoint] = {}

    async def get(self, source_id: str) -> CheckpointDTO:
        """Committed checkpoint of ``source_id`` (zero when never committed)."""
        async with self._db.get_async_session() as session:
            checkpoint = await CheckpointRepository(session).get(source_id)
        return checkpoint or CheckpointDTO(source_id=source_id)

    async def commit(self, source_id: str, last_block: int, count_processed: int) -> bool:
        """Advance the checkpoint and prune applied ids below it.

        Failures are logged, not raised: the batch stays replayable.

        Returns:
            True if the checkpoint was written.
        """
        try:
            async with self._db.get_async_session() as session:
                checkpoint = await CheckpointRepository(session).advance(
                    source_id,
                    last_block=last_block,
                    count_processed=count_processed,
                    synced_at=datetime.now(UTC),
                )
                pruned = await AppliedEventRepository(session).prune(
                    source_id, before_block=checkpoint.last_block
                )
        except (SQLAlchemyError, OSError) as e:
            logger.error("Checkpoint commit failed for %s at block %d: %s", source_id, last_block, e)
            return False

        logger.info(
            "Checkpoint %s committed at block %d (%d events total, %d applied ids pruned)",
            source_id,
            checkpoint.last_block,
            checkpoint.events_processed,
            pruned,
        )
        if self._on_commit:
            try:
                self._on_commit(checkpoint)
            except Exception as e:
                logger.warning("Checkpoint commit callback failed: %s", e)
        return True

    def stage(self, source_id: str, *, last_block: int, count_processed: int) -> None:
        """Record a durably applied batch awaiting sync; positions accumulate."""
        previous = self._staged.get(source_id)
        if previous is None:
            self._staged[source_id] = StagedCheckpoint(last_block, count_processed)
            return
        self._staged[source_id] = StagedCheckpoint(
            last_block=max(previous.last_block, last_block),
            count_processed=previous.count_processed + count_processed,
        )

    def staged(self, source_id: str | None = None) -> dict[str, StagedCheckpoint]:
        """Snapshot of staged positions (one source, or all)."""
        if source_id is None:
            return dict(self._staged)
        staged = self._staged.get(source_id)
        return {source_id: staged} if staged else {}

    @property
    def staged_sources(self) -> list[str]:
        return sorted(self._staged)

    async def commit_staged(self, snapshot: Mapping[str, StagedCheckpoint]) -> list[str]:
        """Commit positions taken by :meth:`staged`.

        Anything staged after the snapshot stays staged for the next pass.

        Returns:
            Sources whose checkpoint was committed.
        """
        committed: list[str] = []
        for source_id, position in snapshot.items():
            if not await self.commit(source_id, position.last_block, position.count_processed):
                continue
            committed.append(source_id)
            current = self._staged.get(source_id)
            if current is None:
                continue
            remaining = current.count_processed - position.count_processed
            if current.last_block <= position.last_block and remaining <= 0:
                del self._staged[source_id]
            else:
                self._staged[source_id] = StagedCheckpoint(
                    last_block=current.last_block,
                    count_processed=max(0, remaining),
                )
        return committed
