"""Command-line entry point.

Usage:
    # Run the live pipeline until interrupted
    python -m options_flow_tracker run

    # Log signals without publishing them
    python -m options_flow_tracker run --dry-run

    # Re-read the last 6 hours of two instruments
    python -m options_flow_tracker backfill -i BTC-27DEC24-60000-C -i BTC-27DEC24-60000-P --hours 6
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys

from options_flow_tracker.backfill import BackfillError
from options_flow_tracker.config import get_settings
from options_flow_tracker.pipeline import Pipeline

logger = logging.getLogger(__name__)


async def _run_live(dry_run: bool | None) -> int:
    await Pipeline(dry_run=dry_run).run()
    return 0


async def _run_manual_backfill(instruments: list[str], hours: float, dry_run: bool | None) -> int:
    pipeline = Pipeline(dry_run=dry_run)
    await pipeline.start(live=False)
    try:
        stats = await pipeline.run_manual_backfill(instruments, hours)
    except BackfillError as e:
        logger.error("%s", e)
        return 2
    finally:
        await pipeline.stop()

    logger.info(
        "Manual backfill: instruments=%d windows=%d rows=%d applied=%d signals=%d failures=%d",
        stats.instruments,
        stats.windows_fetched,
        stats.rows,
        stats.applied,
        stats.signals,
        stats.failures,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="options-flow-tracker",
        description="Block-trade flow analytics for listed BTC options",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Log signals instead of publishing them",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the live pipeline")

    backfill = sub.add_parser("backfill", help="Backfill a manual range for chosen instruments")
    backfill.add_argument(
        "-i",
        "--instrument",
        action="append",
        dest="instruments",
        required=True,
        help="Instrument name (repeatable)",
    )
    backfill.add_argument(
        "--hours",
        type=float,
        default=24.0,
        help="Lookback in hours (default: 24)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Settings: %s", settings.redacted_summary())

    if args.command == "backfill":
        return asyncio.run(_run_manual_backfill(args.instruments, args.hours, args.dry_run))
    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(_run_live(args.dry_run))
    return 130


if __name__ == "__main__":
    sys.exit(main())
