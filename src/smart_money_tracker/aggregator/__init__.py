"""Wallet aggregation layer - per-wallet running state.

The aggregator itself lives in :mod:`smart_money_tracker.aggregator.wallets`;
only the state models are re-exported here because the detector layer
depends on them.
"""

from smart_money_tracker.aggregator.models import (
    AppliedEvent,
    LoadedWallet,
    PendingWrites,
    WalletState,
)

__all__ = [
    "AppliedEvent",
    "LoadedWallet",
    "PendingWrites",
    "WalletState",
]
