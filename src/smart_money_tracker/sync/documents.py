"""Projection of wallet state and scores into read-side documents."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from smart_money_tracker.aggregator.models import WalletState
from smart_money_tracker.detector.models import Classification, ScoreRecord


def _epoch(value: datetime | None) -> int | None:
    return int(value.timestamp()) if value is not None else None


def score_fields(score: ScoreRecord) -> dict[str, Any]:
    return {
        "totalScore": score.total_score,
        "volumeScore": score.volume_score,
        "frequencyScore": score.frequency_score,
        "diversityScore": score.diversity_score,
        "timingScore": score.timing_score,
        "lastUpdated": _epoch(score.last_updated),
    }


def wallet_document(
    state: WalletState,
    classification: Classification,
    score: ScoreRecord,
    *,
    synced_at: datetime,
) -> dict[str, Any]:
    """Wallet document keyed by address.

    ``tags`` carries the full classification, score-derived tags included.
    Integer amounts are decimal strings so 256-bit values survive JSON.
    """
    return {
        "id": state.address,
        "address": state.address,
        "totalVolume": str(state.total_volume),
        "transactionCount": state.transaction_count,
        "firstSeen": _epoch(state.first_seen),
        "lastActive": _epoch(state.last_active),
        "isWhale": classification.is_whale,
        "tags": list(classification.tags),
        "protocols": sorted(state.protocols),
        "maxGasCost": str(state.max_gas_cost),
        "largeTransferCount": state.large_transfer_count,
        "scoreComponentsRef": state.score_id,
        "score": score_fields(score),
        "syncedAt": synced_at.isoformat(),
    }


def score_document(score: ScoreRecord, *, synced_at: datetime) -> dict[str, Any]:
    """Score document keyed by ``{address}_score``."""
    return {
        "id": score.score_id,
        "wallet_id": score.wallet_address,
        **score_fields(score),
        "syncedAt": synced_at.isoformat(),
    }
