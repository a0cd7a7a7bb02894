"""Detection layer - wallet scoring and classification."""

from smart_money_tracker.detector.classifier import DEFAULT_RULES, Classifier, TagRule
from smart_money_tracker.detector.models import (
    Classification,
    ScoreRecord,
    Thresholds,
)
from smart_money_tracker.detector.scorer import ScoreCalculator, compute_score

__all__ = [
    "DEFAULT_RULES",
    "Classification",
    "Classifier",
    "ScoreCalculator",
    "ScoreRecord",
    "TagRule",
    "Thresholds",
    "compute_score",
]
