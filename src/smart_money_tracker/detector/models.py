"""Data models for scoring and classification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from smart_money_tracker.config import ThresholdSettings

# Tag vocabulary, in rule evaluation order.
TAG_WHALE = "whale"
TAG_HIGH_GAS_USER = "high-gas-user"
TAG_ACTIVE_TRADER = "active-trader"
TAG_SUBSCRIBER = "subscriber"
TAG_HIGH_SCORER = "high-scorer"


@dataclass(frozen=True)
class Thresholds:
    """Classification and scoring thresholds.

    Amounts are raw token base units. Defaults mirror the indexer handlers
    (18-decimal tokens). The four score components cap the total at 400, so
    the default high_scorer_total of 400 never tags anyone; lower it to use
    the high-scorer rule.
    """

    whale_volume: int = 100_000 * 10**18
    high_gas: int = 10**18
    large_transfer: int = 1_000 * 10**18
    whale_tx_count: int = 100
    active_trader_tx_count: int = 50
    high_scorer_total: float = 400.0

    def __post_init__(self) -> None:
        if self.whale_volume <= 0:
            raise ValueError("whale_volume must be > 0")
        if self.high_gas <= 0:
            raise ValueError("high_gas must be > 0")

    @classmethod
    def from_settings(cls, settings: ThresholdSettings) -> Thresholds:
        return cls(
            whale_volume=settings.whale_volume,
            high_gas=settings.high_gas,
            large_transfer=settings.large_transfer,
            whale_tx_count=settings.whale_tx_count,
            active_trader_tx_count=settings.active_trader_tx_count,
            high_scorer_total=settings.high_scorer_total,
        )


@dataclass(frozen=True)
class ScoreRecord:
    """Composite wallet score; a pure function of WalletState and a clock."""

    wallet_address: str
    volume_score: float
    frequency_score: float
    diversity_score: float
    timing_score: float
    total_score: float
    last_updated: datetime

    @property
    def score_id(self) -> str:
        return f"{self.wallet_address}_score"


@dataclass(frozen=True)
class Classification:
    """Classifier output."""

    is_whale: bool
    tags: tuple[str, ...]

    def has(self, tag: str) -> bool:
        return tag in self.tags
