"""Test that the project setup is working correctly."""

import smart_money_tracker


def test_version() -> None:
    """Test that version is defined."""
    assert smart_money_tracker.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from smart_money_tracker import aggregator
    from smart_money_tracker import detector
    from smart_money_tracker import ingestor
    from smart_money_tracker import pipeline
    from smart_money_tracker import storage
    from smart_money_tracker import sync
    from smart_money_tracker.aggregator import wallets

    # Just verify imports work
    assert aggregator is not None
    assert detector is not None
    assert ingestor is not None
    assert pipeline is not None
    assert storage is not None
    assert sync is not None
    assert wallets is not None
