"""Pytest configuration and fixtures."""

from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from smart_money_tracker.ingestor.models import CanonicalEvent, EventKind
from smart_money_tracker.storage.database import DatabaseManager

WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40
T0 = datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture
def wallet_a() -> str:
    """Sample wallet address."""
    return WALLET_A


@pytest.fixture
def wallet_b() -> str:
    """Second sample wallet address."""
    return WALLET_B


@pytest.fixture
def t0() -> datetime:
    """Fixed reference time."""
    return T0


@pytest.fixture
def make_event() -> Callable[..., CanonicalEvent]:
    """Factory for canonical events with sensible defaults."""

    def factory(
        raw_id: str = "1",
        *,
        source_id: str = "DEXTrade",
        kind: EventKind = EventKind.DEX_TRADE,
        wallet: str = WALLET_A,
        amount: int = 1_000,
        block: int = 100,
        timestamp: datetime = T0,
        counterparty: str | None = None,
        protocol: str | None = "uniswap",
        gas_cost: int = 0,
        is_large: bool = False,
    ) -> CanonicalEvent:
        return CanonicalEvent(
            id=f"{source_id}:{raw_id}",
            source_id=source_id,
            kind=kind,
            wallet_address=wallet,
            amount=amount,
            block_number=block,
            timestamp=timestamp,
            counterparty_address=counterparty,
            protocol=protocol,
            gas_cost=gas_cost,
            is_large=is_large,
        )

    return factory


@pytest.fixture
def database_url(tmp_path) -> str:
    """File-backed SQLite URL (shared across connections, unlike :memory:)."""
    return f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}"


@pytest.fixture
async def db(database_url: str):
    """DatabaseManager with the full schema created."""
    manager = DatabaseManager(database_url)
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
