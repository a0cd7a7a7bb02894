"""Composite smart-money scorer.

This module provides the ScoreCalculator class that derives a bounded
0-500 score from a wallet's aggregated state using four components.
"""

from datetime import UTC, datetime

from smart_money_tracker.aggregator.models import WalletState
from smart_money_tracker.detector.models import ScoreRecord, Thresholds

# Component ceilings and weights
COMPONENT_MAX = 100.0
TOTAL_MAX = 500.0
FREQUENCY_POINTS_PER_TX = 2.0
DIVERSITY_POINTS_PER_TAG = 20.0
TIMING_DECAY_PER_HOUR = 1.0


def _clamp(value: float, upper: float) -> float:
    return max(0.0, min(upper, value))


def compute_score(state: WalletState, *, whale_volume: int, now: datetime) -> ScoreRecord:
    """Compute the score of ``state`` as of ``now``.

    Pure: the same state and reference time always yield the same record.
    """
    volume = _clamp(state.total_volume * COMPONENT_MAX / whale_volume, COMPONENT_MAX)
    frequency = _clamp(state.transaction_count * FREQUENCY_POINTS_PER_TX, COMPONENT_MAX)
    diversity = _clamp(len(state.tags) * DIVERSITY_POINTS_PER_TAG, COMPONENT_MAX)

    if state.last_active is None:
        timing = 0.0
    else:
        # Future last_active (clock skew) clamps at the ceiling.
        hours_since = (now - state.last_active).total_seconds() / 3600.0
        timing = _clamp(COMPONENT_MAX - hours_since * TIMING_DECAY_PER_HOUR, COMPONENT_MAX)

    total = _clamp(volume + frequency + diversity + timing, TOTAL_MAX)
    return ScoreRecord(
        wallet_address=state.address,
        volume_score=volume,
        frequency_score=frequency,
        diversity_score=diversity,
        timing_score=timing,
        total_score=total,
        last_updated=now,
    )


class ScoreCalculator:
    """Scores wallet state with four bounded components.

    Scoring Formula:
        volume    = min(100, total_volume / whale_volume * 100)
        frequency = min(100, transaction_count * 2)
        diversity = min(100, len(tags) * 20)
        timing    = max(0, 100 - hours_since(last_active))

        total = min(500, volume + frequency + diversity + timing)

    Every component is clamped into [0, 100]. ``tags`` are the state-derived
    tags only, so the score never feeds back into itself.

    Example:
        ```python
        calculator = ScoreCalculator(Thresholds(whale_volume=100_000))
        record = calculator.compute(state, now=datetime.now(UTC))
        print(record.total_score)
        ```
    """

    def __init__(self, thresholds: Thresholds | None = None) -> None:
        self._thresholds = thresholds or Thresholds()

    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    def compute(self, state: WalletState, *, now: datetime | None = None) -> ScoreRecord:
        """Compute the ScoreRecord for ``state``.

        Args:
            state: Wallet state to score.
            now: Reference time for recency decay (defaults to current UTC time).
        """
        return compute_score(
            state,
            whale_volume=self._thresholds.whale_volume,
            now=now or datetime.now(UTC),
        )
