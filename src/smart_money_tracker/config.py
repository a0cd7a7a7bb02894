"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Smart Money Tracker engine, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ASYNC_SQL_PREFIXES = (
    "postgresql://",
    "postgresql+asyncpg://",
    "sqlite+aiosqlite://",
)

DEFAULT_INDEXER_SOURCES = (
    "SubscriptionService_Subscribed",
    "SubscriptionService_SubscriptionCancelled",
    "TokenTransfer",
    "DEXTrade",
)


class DatabaseSettings(BaseSettings):
    """Durable core state database settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or aiosqlite) connection string for wallet state and checkpoints",
    )
    auto_create_schema: bool = Field(
        default=False,
        alias="DATABASE_AUTO_CREATE_SCHEMA",
        description="Create missing tables on startup instead of relying on alembic",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(_ASYNC_SQL_PREFIXES):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class MaterializedStoreSettings(BaseSettings):
    """Downstream document store settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="MATERIALIZED_STORE_URL",
        description="Connection string for materialized documents (defaults to DATABASE_URL)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(_ASYNC_SQL_PREFIXES):
            raise ValueError("MATERIALIZED_STORE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (enables the cross-process sync lease)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class IndexerSettings(BaseSettings):
    """Blockchain indexer (GraphQL) feed settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    graphql_url: str | None = Field(
        default=None,
        alias="INDEXER_GRAPHQL_URL",
        description="Envio/Hasura GraphQL endpoint; ingestion is a no-op when unset",
    )
    sources: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_INDEXER_SOURCES,
        alias="INDEXER_SOURCES",
        description="Indexer entities to ingest (comma-separated)",
    )
    batch_size: int = Field(
        default=500,
        alias="INDEXER_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Records fetched per source per poll",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        alias="INDEXER_POLL_INTERVAL_SECONDS",
        ge=0.1,
        le=3600,
        description="Delay between polls once every source is caught up",
    )
    max_backoff_seconds: float = Field(
        default=300.0,
        alias="INDEXER_MAX_BACKOFF_SECONDS",
        ge=1.0,
        le=3600,
        description="Backoff ceiling while the feed is unreachable",
    )
    timeout_seconds: float = Field(
        default=15.0,
        alias="INDEXER_TIMEOUT_SECONDS",
        ge=1.0,
        le=300,
        description="HTTP timeout for a single GraphQL request",
    )
    max_retries: int = Field(
        default=3,
        alias="INDEXER_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries per GraphQL request on transient failures",
    )

    @field_validator("graphql_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("INDEXER_GRAPHQL_URL must be an HTTP(S) endpoint")
        return v

    @field_validator("sources", mode="before")
    @classmethod
    def _parse_sources(cls, v: object) -> tuple[str, ...]:
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return tuple(parts)
        if isinstance(v, (list, tuple)):
            return tuple(str(x) for x in v)
        raise TypeError("Invalid INDEXER_SOURCES type")

    @property
    def enabled(self) -> bool:
        return self.graphql_url is not None


class IngestSettings(BaseSettings):
    """Aggregation concurrency settings."""

    model_config = SettingsConfigDict(env_prefix="INGEST_", extra="ignore")

    max_concurrency: int = Field(
        default=16,
        alias="INGEST_MAX_CONCURRENCY",
        ge=1,
        le=1024,
        description="Wallet addresses aggregated in parallel within one batch",
    )


class ThresholdSettings(BaseSettings):
    """Classification and scoring thresholds (raw token base units)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    whale_volume: int = Field(
        default=100_000 * 10**18,
        alias="WHALE_VOLUME_THRESHOLD",
        gt=0,
        description="Total volume marking a wallet as whale (also the volume-score scale)",
    )
    high_gas: int = Field(
        default=10**18,
        alias="HIGH_GAS_THRESHOLD",
        gt=0,
        description="Single-transaction gas cost marking a high-gas user",
    )
    large_transfer: int = Field(
        default=1_000 * 10**18,
        alias="LARGE_TRANSFER_THRESHOLD",
        gt=0,
        description="Amount at which a transfer counts as large",
    )
    whale_tx_count: int = Field(
        default=100,
        alias="WHALE_TX_COUNT",
        ge=1,
        description="Transaction count marking a wallet as whale",
    )
    active_trader_tx_count: int = Field(
        default=50,
        alias="ACTIVE_TRADER_TX_COUNT",
        ge=1,
        description="Transaction count for the active-trader tag",
    )
    high_scorer_total: float = Field(
        default=400.0,
        alias="HIGH_SCORER_TOTAL",
        ge=0.0,
        le=500.0,
        description="Total score above which the high-scorer tag applies",
    )


class SyncSettings(BaseSettings):
    """Materialization/sync service settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    interval_seconds: float = Field(
        default=30.0,
        alias="SYNC_INTERVAL_SECONDS",
        ge=0.1,
        le=86_400,
        description="Periodic sync interval",
    )
    batch_size: int = Field(
        default=200,
        alias="SYNC_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Dirty wallets read per page during a sync pass",
    )
    reconcile_interval_seconds: float = Field(
        default=3600.0,
        alias="SYNC_RECONCILE_INTERVAL_SECONDS",
        ge=1.0,
        le=7 * 86_400,
        description="How often to re-materialize recently updated wallets regardless of dirty state",
    )
    lease_ttl_seconds: int = Field(
        default=120,
        alias="SYNC_LEASE_TTL_SECONDS",
        ge=5,
        le=3600,
        description="Redis sync lease expiry",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from smart_money_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.thresholds.whale_volume)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    store: MaterializedStoreSettings = Field(
        default_factory=lambda: MaterializedStoreSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingest: IngestSettings = Field(
        default_factory=lambda: IngestSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    thresholds: ThresholdSettings = Field(
        default_factory=lambda: ThresholdSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    @property
    def store_url(self) -> str:
        """Materialized store URL, falling back to the core database."""
        return self.store.url or self.database.url

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "store_url": self._redact_url(self.store_url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "indexer": {
                "graphql_url": self.indexer.graphql_url or "(not set)",
                "sources": ",".join(self.indexer.sources),
                "batch_size": str(self.indexer.batch_size),
            },
            "thresholds": {
                "whale_volume": str(self.thresholds.whale_volume),
                "high_gas": str(self.thresholds.high_gas),
                "large_transfer": str(self.thresholds.large_transfer),
                "whale_tx_count": str(self.thresholds.whale_tx_count),
                "active_trader_tx_count": str(self.thresholds.active_trader_tx_count),
                "high_scorer_total": str(self.thresholds.high_scorer_total),
            },
            "sync": {
                "interval_seconds": str(self.sync.interval_seconds),
                "reconcile_interval_seconds": str(self.sync.reconcile_interval_seconds),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "check", "sync-once"]) -> None:
        """Validate command-specific requirements."""
        if command == "run" and not self.indexer.enabled:
            logging.getLogger(__name__).warning(
                "INDEXER_GRAPHQL_URL is not set; ingestion will idle and only sync existing state"
            )
        if not self.indexer.sources:
            raise ValueError("INDEXER_SOURCES must name at least one indexer entity")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
