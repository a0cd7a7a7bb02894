"""GraphQL indexer feed with retry logic.

The feed is the inbound boundary of the engine: it pages through one
indexer entity per source, ordered by ``(blockNumber, id)`` so a cursor of
``(from_block, offset)`` can resume deterministically.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

# Fields selected per indexer entity. The schema exposes no gasUsed/gasPrice
# and no subscription value, so those stay unset on fed records.
ENTITY_FIELDS: dict[str, tuple[str, ...]] = {
    "SubscriptionService_Subscribed": (
        "id",
        "subscriber",
        "planId",
        "expiresAt",
        "blockNumber",
        "transactionHash",
        "timestamp",
    ),
    "SubscriptionService_SubscriptionCancelled": (
        "id",
        "subscriber",
        "planId",
        "cancelledAt",
        "blockNumber",
        "transactionHash",
        "timestamp",
    ),
    "TokenTransfer": (
        "id",
        "token",
        "from",
        "to",
        "value",
        "blockNumber",
        "transactionHash",
        "timestamp",
        "isLargeTransfer",
    ),
    "DEXTrade": (
        "id",
        "trader",
        "tokenIn",
        "tokenOut",
        "amountIn",
        "amountOut",
        "dexProtocol",
        "blockNumber",
        "transactionHash",
        "timestamp",
    ),
}


class FeedError(Exception):
    """Base exception for indexer feed errors."""


class FeedUnavailableError(FeedError):
    """Raised when the indexer is unreachable or keeps failing (retryable)."""


class FeedQueryError(FeedError):
    """Raised when the indexer rejects a query (4xx or GraphQL errors)."""


class IndexerFeed(Protocol):
    """Inbound indexer interface consumed by the pipeline."""

    async def fetch(
        self, source_id: str, *, from_block: int, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class NullFeed:
    """Feed used when no indexer is configured; yields nothing."""

    async def fetch(
        self, source_id: str, *, from_block: int, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        return []

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def build_query(entity: str, *, from_block: int, limit: int, offset: int) -> str:
    """Build the paged GraphQL query for one entity."""
    fields = ENTITY_FIELDS.get(entity)
    if fields is None:
        raise FeedQueryError(f"No field selection known for indexer entity {entity!r}")
    selection = "\n    ".join(fields)
    return (
        "query FetchEvents {\n"
        f"  {entity}(\n"
        f"    where: {{blockNumber: {{_gte: {int(from_block)}}}}}\n"
        "    order_by: [{blockNumber: asc}, {id: asc}]\n"
        f"    limit: {int(limit)}\n"
        f"    offset: {int(offset)}\n"
        "  ) {\n"
        f"    {selection}\n"
        "  }\n"
        "}"
    )


class EnvioGraphQLFeed:
    """Envio (Hasura) GraphQL indexer client.

    Transient failures (transport errors, 429 and 5xx) are retried with
    exponential backoff; exhausting the retries raises
    :class:`FeedUnavailableError`. Client errors and GraphQL ``errors``
    payloads raise :class:`FeedQueryError` immediately.

    Example:
        ```python
        feed = EnvioGraphQLFeed("http://localhost:8080/v1/graphql")
        rows = await feed.fetch("TokenTransfer", from_block=0, limit=100)
        await feed.close()
        ```
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def fetch(
        self, source_id: str, *, from_block: int, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        """Fetch one page of entity rows at or after ``from_block``.

        Each returned row is tagged with ``entity`` for the normalizer.
        """
        query = build_query(source_id, from_block=from_block, limit=limit, offset=offset)
        data = await self._execute(query)
        rows = data.get(source_id)
        if rows is None:
            raise FeedQueryError(f"Indexer response has no '{source_id}' field")
        if not isinstance(rows, list):
            raise FeedQueryError(f"Indexer field '{source_id}' is not a list")
        result: list[dict[str, Any]] = []
        for row in rows:
            if isinstance(row, Mapping):
                result.append({**row, "entity": source_id})
        return result

    async def ping(self) -> bool:
        try:
            await self._execute("query Ping { __typename }")
        except FeedError as e:
            logger.warning("Indexer ping failed: %s", e)
            return False
        return True

    async def _execute(self, query: str) -> dict[str, Any]:
        client = await self._get_client()
        last_error: str | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = await client.post(self._url, json={"query": query})
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code in RETRY_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise FeedQueryError(f"Indexer rejected query: HTTP {response.status_code}")
                else:
                    return self._parse(response)

            if attempt == self._max_retries:
                break
            delay = self._retry_base_delay * (2**attempt)
            logger.warning(
                "Indexer attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                attempt + 1,
                self._max_retries + 1,
                last_error,
                delay,
            )
            await asyncio.sleep(delay)

        raise FeedUnavailableError(
            f"All {self._max_retries + 1} indexer attempts failed: {last_error}"
        )

    @staticmethod
    def _parse(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise FeedQueryError(f"Indexer returned invalid JSON: {e}") from e
        if not isinstance(payload, Mapping):
            raise FeedQueryError("Indexer returned a non-object payload")
        errors = payload.get("errors")
        if errors:
            raise FeedQueryError(f"GraphQL errors: {errors}")
        data = payload.get("data")
        if not isinstance(data, Mapping):
            raise FeedQueryError("Indexer response has no data")
        return dict(data)
