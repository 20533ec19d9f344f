"""Command line entry point.

Usage:
    python -m burn_watcher watch              # live burns + reconciliation scan
    python -m burn_watcher scan [--once]      # record burns from the chain history
    python -m burn_watcher backfill-tx HASH…  # record burns from given transactions
    python -m burn_watcher init-db            # create tables (development)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from burn_watcher.config import Settings, get_settings
from burn_watcher.models import RecordOutcome
from burn_watcher.service import WatcherService
from burn_watcher.storage.database import DatabaseManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="burn-watcher",
        description="Watch an ERC-20 token for reward-recipient burns",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOG_LEVEL",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("watch", help="Forward inbound rewards to the disposal address and record burns")

    scan = sub.add_parser("scan", help="Record burns from chain history, then keep polling")
    scan.add_argument("--once", action="store_true", help="Stop once the chain head is reached")

    backfill = sub.add_parser("backfill-tx", help="Record burns from explicit transaction hashes")
    backfill.add_argument("tx_hashes", nargs="+", metavar="HASH")

    sub.add_parser("init-db", help="Create database tables directly")
    return parser.parse_args(argv)


def _install_signal_handlers(service: WatcherService) -> None:
    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("Received %s; shutting down", sig.name)
        service.request_stop()

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal, sig)
    except NotImplementedError:
        # Windows event loops do not support signal handlers.
        pass


async def _run_service(settings: Settings, args: argparse.Namespace) -> int:
    mode = "watch" if args.command == "watch" else "scan"
    service = WatcherService(settings, mode=mode, once=getattr(args, "once", False))
    _install_signal_handlers(service)
    await service.run()
    return 0


async def _backfill(settings: Settings, tx_hashes: list[str]) -> int:
    results = await WatcherService(settings).backfill_transactions(tx_hashes)
    for tx_hash, outcome in results.items():
        logger.info("%s: %s", tx_hash, outcome.value if outcome else "no burn recorded")
    inserted = sum(1 for o in results.values() if o is RecordOutcome.INSERTED)
    logger.info("Backfill done: %d inserted, %d total", inserted, len(results))
    return 0


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    return 0


async def main_async(args: argparse.Namespace) -> int:
    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    if not args.log_level:
        logging.getLogger().setLevel(settings.get_logging_level())
    logger.info("Configuration: %s", settings.redacted_summary())

    try:
        if args.command == "init-db":
            return await _init_db(settings)
        if args.command == "backfill-tx":
            return await _backfill(settings, args.tx_hashes)
        return await _run_service(settings, args)
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))
    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
