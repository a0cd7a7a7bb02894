"""Command-line entry point.

Usage:
    smart-money-tracker run         # ingest and sync until interrupted
    smart-money-tracker check       # ping database, store, Redis and indexer
    smart-money-tracker sync-once   # one materialization pass, then exit
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from smart_money_tracker import __version__
from smart_money_tracker.config import Settings, get_settings
from smart_money_tracker.pipeline import Pipeline
from smart_money_tracker.sync.store import StoreUnavailableError

logger = logging.getLogger("smart_money_tracker")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="smart-money-tracker",
        description="Aggregate indexer events into smart-money wallet profiles",
    )
    parser.add_argument(
        "command",
        choices=["run", "check", "sync-once"],
        help="run: ingest and sync until interrupted; check: ping dependencies; "
        "sync-once: materialize pending wallets and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override LOG_LEVEL",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def configure_logging(settings: Settings, override: str | None = None) -> None:
    level = getattr(logging, override) if override else settings.get_logging_level()
    logging.basicConfig(level=level, format=LOG_FORMAT)


async def _run(pipeline: Pipeline) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform's event loop.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pipeline.request_stop)
    await pipeline.run()
    return 0


async def _check(pipeline: Pipeline) -> int:
    try:
        results = await pipeline.check_connections()
    finally:
        await pipeline.stop()
    return 0 if all(results.values()) else 1


async def _sync_once(pipeline: Pipeline) -> int:
    try:
        result = await pipeline.sync_once()
    except StoreUnavailableError as e:
        logger.error("Sync failed: %s", e)
        return 1
    finally:
        await pipeline.stop()
    logger.info(
        "Sync complete: %d documents, %d errors, committed=%s",
        result.synced,
        len(result.errors),
        ",".join(result.committed_sources) or "-",
    )
    return 0 if not result.errors else 2


def main(argv: Sequence[str] | None = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(settings, args.log_level)
    logger.info("Configuration: %s", json.dumps(settings.redacted_summary()))

    pipeline = Pipeline(settings)
    commands = {"run": _run, "check": _check, "sync-once": _sync_once}
    try:
        return asyncio.run(commands[args.command](pipeline))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
