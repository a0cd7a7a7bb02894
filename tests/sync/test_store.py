"""Tests for the SQL-backed document store."""

import pytest

from smart_money_tracker.storage.database import DatabaseManager
from smart_money_tracker.sync.store import (
    SCORES_COLLECTION,
    WALLETS_COLLECTION,
    DocumentWriteError,
    SqlDocumentStore,
    StoreUnavailableError,
)


@pytest.fixture
async def store(db) -> SqlDocumentStore:
    document_store = SqlDocumentStore(db)
    await document_store.init_schema()
    return document_store


class TestSqlDocumentStore:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store, wallet_a) -> None:
        await store.upsert(WALLETS_COLLECTION, wallet_a, {"id": wallet_a, "transactionCount": 1})
        assert await store.get(WALLETS_COLLECTION, wallet_a) == {"id": wallet_a, "transactionCount": 1}
        assert await store.get(SCORES_COLLECTION, wallet_a) is None

    @pytest.mark.asyncio
    async def test_upsert_replaces_document(self, store, wallet_a) -> None:
        await store.upsert(WALLETS_COLLECTION, wallet_a, {"transactionCount": 1})
        await store.upsert(WALLETS_COLLECTION, wallet_a, {"transactionCount": 2})
        assert await store.get(WALLETS_COLLECTION, wallet_a) == {"transactionCount": 2}

    @pytest.mark.asyncio
    async def test_replay_only_bumps_synced_at(self, store, wallet_a) -> None:
        document = {"id": wallet_a, "totalScore": 102.5}
        await store.upsert(SCORES_COLLECTION, f"{wallet_a}_score", document)
        first = await store.last_synced_at(SCORES_COLLECTION, f"{wallet_a}_score")
        await store.upsert(SCORES_COLLECTION, f"{wallet_a}_score", document)
        second = await store.last_synced_at(SCORES_COLLECTION, f"{wallet_a}_score")

        assert await store.get(SCORES_COLLECTION, f"{wallet_a}_score") == document
        assert first is not None
        assert second >= first

    @pytest.mark.asyncio
    async def test_unserializable_document_is_a_write_error(self, store, wallet_a) -> None:
        with pytest.raises(DocumentWriteError) as exc_info:
            await store.upsert(WALLETS_COLLECTION, wallet_a, {"protocols": {"uniswap"}})

        assert exc_info.value.collection == WALLETS_COLLECTION
        assert exc_info.value.doc_id == wallet_a
        assert await store.get(WALLETS_COLLECTION, wallet_a) is None

    @pytest.mark.asyncio
    async def test_ping(self, store) -> None:
        await store.ping()

    @pytest.mark.asyncio
    async def test_unreachable_store(self, tmp_path, wallet_a) -> None:
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'store.db'}")
        store = SqlDocumentStore(db)

        with pytest.raises(StoreUnavailableError):
            await store.ping()
        with pytest.raises(StoreUnavailableError):
            await store.upsert(WALLETS_COLLECTION, wallet_a, {})
        await db.dispose_async()
