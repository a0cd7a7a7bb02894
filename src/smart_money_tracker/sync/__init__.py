"""Sync layer - Materialization of wallet state into the document store."""

from smart_money_tracker.sync.documents import score_document, wallet_document
from smart_money_tracker.sync.service import (
    MaterializationService,
    SyncResult,
    SyncState,
    SyncStats,
)
from smart_money_tracker.sync.store import (
    SCORES_COLLECTION,
    WALLETS_COLLECTION,
    DocumentStore,
    DocumentWriteError,
    SqlDocumentStore,
    StoreError,
    StoreUnavailableError,
)

__all__ = [
    "SCORES_COLLECTION",
    "WALLETS_COLLECTION",
    "DocumentStore",
    "DocumentWriteError",
    "MaterializationService",
    "SqlDocumentStore",
    "StoreError",
    "StoreUnavailableError",
    "SyncResult",
    "SyncState",
    "SyncStats",
    "score_document",
    "wallet_document",
]
