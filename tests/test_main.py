"""Tests for the command-line entry point."""

import pytest

from smart_money_tracker.__main__ import create_parser, main
from smart_money_tracker.config import clear_settings_cache


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_URL", "MATERIALIZED_STORE_URL", "REDIS_URL", "INDEXER_GRAPHQL_URL"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


def test_parser_commands() -> None:
    parser = create_parser()
    assert parser.parse_args(["sync-once"]).command == "sync-once"
    assert parser.parse_args(["run", "--log-level", "DEBUG"]).log_level == "DEBUG"
    with pytest.raises(SystemExit):
        parser.parse_args(["replay"])


def test_invalid_configuration_exits_with_2(capsys) -> None:
    assert main(["check"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_check_and_sync_once_against_sqlite(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("DATABASE_AUTO_CREATE_SCHEMA", "true")

    assert main(["check"]) == 0
    assert main(["sync-once"]) == 0
