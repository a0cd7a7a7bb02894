"""Declarative wallet classification rules."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from smart_money_tracker.aggregator.models import WalletState
from smart_money_tracker.detector.models import (
    TAG_ACTIVE_TRADER,
    TAG_HIGH_GAS_USER,
    TAG_HIGH_SCORER,
    TAG_SUBSCRIBER,
    TAG_WHALE,
    Classification,
    ScoreRecord,
    Thresholds,
)
from smart_money_tracker.ingestor.models import SUBSCRIPTION_PROTOCOL


def is_whale(state: WalletState, thresholds: Thresholds) -> bool:
    return (
        state.total_volume >= thresholds.whale_volume
        or state.max_gas_cost >= thresholds.high_gas
        or state.transaction_count >= thresholds.whale_tx_count
    )


@dataclass(frozen=True)
class TagRule:
    """A tag applied when ``predicate`` holds."""

    tag: str
    predicate: Callable[[WalletState, ScoreRecord | None, Thresholds], bool]


DEFAULT_RULES: tuple[TagRule, ...] = (
    TagRule(TAG_WHALE, lambda s, _score, t: is_whale(s, t)),
    TagRule(TAG_HIGH_GAS_USER, lambda s, _score, t: s.max_gas_cost >= t.high_gas),
    TagRule(TAG_ACTIVE_TRADER, lambda s, _score, t: s.transaction_count >= t.active_trader_tx_count),
    TagRule(TAG_SUBSCRIBER, lambda s, _score, _t: SUBSCRIPTION_PROTOCOL in s.protocols),
    TagRule(
        TAG_HIGH_SCORER,
        lambda _s, score, t: score is not None and score.total_score > t.high_scorer_total,
    ),
)


class Classifier:
    """Assigns whale status and tags from wallet state and score.

    Rules are evaluated in a fixed order and are independently additive.
    Score-based rules only apply when a score is supplied; the aggregator
    classifies without one so that the score (which counts tags) stays a
    pure function of state.
    """

    def __init__(
        self,
        thresholds: Thresholds | None = None,
        *,
        rules: tuple[TagRule, ...] = DEFAULT_RULES,
    ) -> None:
        self._thresholds = thresholds or Thresholds()
        self._rules = rules

    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    def classify(self, state: WalletState, score: ScoreRecord | None = None) -> Classification:
        tags = tuple(rule.tag for rule in self._rules if rule.predicate(state, score, self._thresholds))
        return Classification(is_whale=is_whale(state, self._thresholds), tags=tags)
