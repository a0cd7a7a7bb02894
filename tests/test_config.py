"""Tests for configuration loading."""

import logging

import pytest
from pydantic import ValidationError

from smart_money_tracker.config import (
    DEFAULT_INDEXER_SOURCES,
    IndexerSettings,
    Settings,
    clear_settings_cache,
    get_settings,
)
from smart_money_tracker.detector.models import Thresholds


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "DATABASE_URL",
        "MATERIALIZED_STORE_URL",
        "REDIS_URL",
        "INDEXER_GRAPHQL_URL",
        "INDEXER_SOURCES",
        "WHALE_VOLUME_THRESHOLD",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://tracker:secret@db:5432/tracker")
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()

        assert settings.indexer.sources == DEFAULT_INDEXER_SOURCES
        assert settings.indexer.enabled is False
        assert settings.redis.enabled is False
        assert settings.thresholds.whale_volume == 100_000 * 10**18
        assert settings.sync.interval_seconds == 30.0
        assert settings.get_logging_level() == logging.INFO

    def test_store_url_falls_back_to_database(self) -> None:
        settings = Settings()
        assert settings.store_url == settings.database.url

    def test_store_url_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MATERIALIZED_STORE_URL", "sqlite+aiosqlite:///store.db")
        assert Settings().store_url == "sqlite+aiosqlite:///store.db"

    def test_rejects_non_async_database_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "mysql://localhost/db")
        with pytest.raises(ValidationError):
            Settings()

    def test_missing_database_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL")
        with pytest.raises(ValidationError):
            Settings()

    def test_sources_parsed_from_comma_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INDEXER_SOURCES", "TokenTransfer, DEXTrade")
        assert Settings().indexer.sources == ("TokenTransfer", "DEXTrade")

    def test_indexer_url_must_be_http(self) -> None:
        with pytest.raises(ValidationError):
            IndexerSettings(INDEXER_GRAPHQL_URL="ftp://indexer")

    def test_threshold_override_flows_into_thresholds(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WHALE_VOLUME_THRESHOLD", "100000")
        thresholds = Thresholds.from_settings(Settings().thresholds)
        assert thresholds.whale_volume == 100_000

    def test_redacted_summary_masks_password(self) -> None:
        summary = Settings().redacted_summary()
        assert summary["database_url"] == "postgresql+asyncpg://tracker:***@db:5432/tracker"
        assert "secret" not in str(summary)

    def test_validate_requirements_rejects_empty_sources(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INDEXER_SOURCES", " , ")
        with pytest.raises(ValueError, match="INDEXER_SOURCES"):
            Settings().validate_requirements(command="run")


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
    clear_settings_cache()
    assert get_settings() is not None
