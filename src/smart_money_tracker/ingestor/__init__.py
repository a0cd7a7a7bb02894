"""Data ingestion layer - indexer feed and event normalization."""

from smart_money_tracker.ingestor.feed import (
    EnvioGraphQLFeed,
    FeedError,
    FeedQueryError,
    FeedUnavailableError,
    IndexerFeed,
    NullFeed,
)
from smart_money_tracker.ingestor.models import (
    CanonicalEvent,
    EventKind,
    NormalizationError,
)
from smart_money_tracker.ingestor.normalizer import EventNormalizer, NormalizedBatch

__all__ = [
    "CanonicalEvent",
    "EnvioGraphQLFeed",
    "EventKind",
    "EventNormalizer",
    "FeedError",
    "FeedQueryError",
    "FeedUnavailableError",
    "IndexerFeed",
    "NormalizationError",
    "NormalizedBatch",
    "NullFeed",
]
