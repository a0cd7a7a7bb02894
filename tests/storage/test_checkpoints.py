"""Tests for checkpoint staging and commit."""

from unittest.mock import MagicMock

import pytest

from smart_money_tracker.aggregator.models import AppliedEvent
from smart_money_tracker.storage.checkpoints import CheckpointTracker, StagedCheckpoint
from smart_money_tracker.storage.database import DatabaseManager
from smart_money_tracker.storage.repos import AppliedEventRepository


class TestStaging:
    def test_positions_accumulate(self) -> None:
        tracker = CheckpointTracker(MagicMock(spec=DatabaseManager))
        tracker.stage("TokenTransfer", last_block=100, count_processed=10)
        tracker.stage("TokenTransfer", last_block=90, count_processed=5)
        tracker.stage("DEXTrade", last_block=7, count_processed=1)

        assert tracker.staged("TokenTransfer") == {"TokenTransfer": StagedCheckpoint(100, 15)}
        assert tracker.staged_sources == ["DEXTrade", "TokenTransfer"]
        assert tracker.staged("Unknown") == {}

    def test_snapshot_is_a_copy(self) -> None:
        tracker = CheckpointTracker(MagicMock(spec=DatabaseManager))
        tracker.stage("a", last_block=1, count_processed=1)
        snapshot = tracker.staged()
        tracker.stage("b", last_block=1, count_processed=1)
        assert list(snapshot) == ["a"]


class TestCommit:
    @pytest.mark.asyncio
    async def test_get_defaults_to_zero(self, db) -> None:
        checkpoint = await CheckpointTracker(db).get("TokenTransfer")
        assert checkpoint.last_block == 0
        assert checkpoint.events_processed == 0

    @pytest.mark.asyncio
    async def test_commit_prunes_applied_ids_and_notifies(self, db, wallet_a) -> None:
        async with db.get_async_session() as session:
            await AppliedEventRepository(session).insert_many(
                [
                    AppliedEvent("TokenTransfer:1", wallet_a, "TokenTransfer", 50),
                    AppliedEvent("TokenTransfer:2", wallet_a, "TokenTransfer", 100),
                ]
            )
        on_commit = MagicMock()
        tracker = CheckpointTracker(db, on_commit=on_commit)

        assert await tracker.commit("TokenTransfer", 100, 2) is True

        checkpoint = await tracker.get("TokenTransfer")
        assert checkpoint.last_block == 100
        assert checkpoint.events_processed == 2
        on_commit.assert_called_once()
        assert on_commit.call_args.args[0].last_block == 100

        async with db.get_async_session() as session:
            remaining = await AppliedEventRepository(session).list_for_wallet(wallet_a)
        # Ids at the resume block are kept since that block is re-read.
        assert [a.event_id for a in remaining] == ["TokenTransfer:2"]

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_fail_commit(self, db) -> None:
        tracker = CheckpointTracker(db, on_commit=MagicMock(side_effect=RuntimeError("boom")))
        assert await tracker.commit("DEXTrade", 5, 1) is True

    @pytest.mark.asyncio
    async def test_unreachable_database_returns_false(self, tmp_path) -> None:
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'tracker.db'}")
        tracker = CheckpointTracker(db)
        assert await tracker.commit("DEXTrade", 5, 1) is False
        await db.dispose_async()


class TestCommitStaged:
    @pytest.mark.asyncio
    async def test_commits_snapshot_and_clears(self, db) -> None:
        tracker = CheckpointTracker(db)
        tracker.stage("TokenTransfer", last_block=120, count_processed=4)

        committed = await tracker.commit_staged(tracker.staged())

        assert committed == ["TokenTransfer"]
        assert tracker.staged() == {}
        assert (await tracker.get("TokenTransfer")).last_block == 120

    @pytest.mark.asyncio
    async def test_later_staging_survives(self, db) -> None:
        tracker = CheckpointTracker(db)
        tracker.stage("TokenTransfer", last_block=120, count_processed=4)
        snapshot = tracker.staged()
        # Another batch lands while the sync pass is running.
        tracker.stage("TokenTransfer", last_block=180, count_processed=6)

        await tracker.commit_staged(snapshot)

        assert tracker.staged() == {"TokenTransfer": StagedCheckpoint(180, 6)}
        assert (await tracker.get("TokenTransfer")).last_block == 120

    @pytest.mark.asyncio
    async def test_failed_commit_stays_staged(self, tmp_path) -> None:
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'tracker.db'}")
        tracker = CheckpointTracker(db)
        tracker.stage("DEXTrade", last_block=9, count_processed=2)

        assert await tracker.commit_staged(tracker.staged()) == []
        assert tracker.staged_sources == ["DEXTrade"]
        await db.dispose_async()
