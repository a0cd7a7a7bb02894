"""Downstream document store.

Documents are upserted by ``(collection, doc_id)``; replaying the same
upsert only bumps ``synced_at``. Each document is written in its own
transaction so one failed write never rolls back its siblings.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from smart_money_tracker.storage.database import DatabaseManager
from smart_money_tracker.storage.models import MaterializedDocumentModel
from smart_money_tracker.storage.repos import as_utc, dialect_insert

logger = logging.getLogger(__name__)

WALLETS_COLLECTION = "smart_money_wallets"
SCORES_COLLECTION = "smart_money_scores"

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, OSError, ConnectionError)


class StoreError(Exception):
    """Base exception for document store errors."""


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached; aborts the whole sync attempt."""


class DocumentWriteError(StoreError):
    """Raised when a single document write fails."""

    def __init__(self, collection: str, doc_id: str, message: str) -> None:
        super().__init__(f"{collection}/{doc_id}: {message}")
        self.collection = collection
        self.doc_id = doc_id


class DocumentStore(Protocol):
    """Outbound materialized-store interface."""

    async def ping(self) -> None: ...

    async def upsert(self, collection: str, doc_id: str, document: dict[str, Any]) -> None: ...


class SqlDocumentStore:
    """Document store backed by the ``materialized_documents`` table.

    Example:
        ```python
        store = SqlDocumentStore(DatabaseManager(settings.store_url))
        await store.init_schema()
        await store.upsert("smart_money_wallets", address, document)
        ```
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def init_schema(self) -> None:
        await self._db.init_schema_async(tables=[MaterializedDocumentModel.__table__])

    async def ping(self) -> None:
        try:
            await self._db.ping()
        except _CONNECTIVITY_ERRORS as e:
            raise StoreUnavailableError(f"Document store unreachable: {e}") from e

    async def upsert(self, collection: str, doc_id: str, document: dict[str, Any]) -> None:
        """Insert or replace one document.

        Raises:
            StoreUnavailableError: On connectivity failures.
            DocumentWriteError: On any other failure for this document.
        """
        now = datetime.now(UTC)
        try:
            async with self._db.get_async_session() as session:
                stmt = dialect_insert(session, MaterializedDocumentModel).values(
                    collection=collection,
                    doc_id=doc_id,
                    payload=document,
                    synced_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["collection", "doc_id"],
                    set_={
                        "payload": stmt.excluded.payload,
                        "synced_at": stmt.excluded.synced_at,
                    },
                )
                await session.execute(stmt)
        except _CONNECTIVITY_ERRORS as e:
            raise StoreUnavailableError(f"Document store unreachable: {e}") from e
        except (SQLAlchemyError, TypeError, ValueError) as e:
            raise DocumentWriteError(collection, doc_id, str(e)) from e

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        async with self._db.get_async_session() as session:
            result = await session.execute(
                select(MaterializedDocumentModel).where(
                    (MaterializedDocumentModel.collection == collection)
                    & (MaterializedDocumentModel.doc_id == doc_id)
                )
            )
            model = result.scalar_one_or_none()
        return dict(model.payload) if model else None

    async def last_synced_at(self, collection: str, doc_id: str) -> datetime | None:
        async with self._db.get_async_session() as session:
            result = await session.execute(
                select(MaterializedDocumentModel.synced_at).where(
                    (MaterializedDocumentModel.collection == collection)
                    & (MaterializedDocumentModel.doc_id == doc_id)
                )
            )
            return as_utc(result.scalar_one_or_none())
