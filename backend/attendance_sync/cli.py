from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from .config import get_settings, log_settings, validate_startup
from .devices import load_sdk_factory
from .logging_setup import configure_logging
from .machines import load_machines
from .pipeline import run, run_time_sync

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="attendance-sync",
        description="Collect biometric terminal logs and reconcile them into attendance records",
    )
    subparsers = parser.add_subparsers(dest="command")

    collect = subparsers.add_parser("collect", help="collect device logs, then reconcile (default)")
    collect.add_argument(
        "--in-process",
        action="store_true",
        help="run reconciliation in this process instead of an isolated child",
    )

    subparsers.add_parser("sync-time", help="set every terminal's clock to host time")
    return parser


def _collect(in_process: bool) -> int:
    settings = get_settings()
    configure_logging(settings.log_directory, "Log", settings.log_level)
    logger.info("Data collection started")
    validate_startup(settings)
    log_settings(settings)
    machines = load_machines(settings)
    sdk_factory = load_sdk_factory(settings.device_sdk_factory)
    summary = run(settings, machines, sdk_factory, isolate=False if in_process else None)
    logger.info("Data collection completed: %s", summary)
    return 0


def _sync_time() -> int:
    settings = get_settings()
    configure_logging(settings.log_directory, "TLog", settings.log_level)
    logger.info("Time sync started")
    machines = load_machines(settings)
    sdk = load_sdk_factory(settings.device_sdk_factory)()
    failed = run_time_sync(machines, sdk, settings=settings)
    if failed:
        logger.warning("Time sync failed for machines: %s", failed)
    logger.info("Time sync completed")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "sync-time":
            return _sync_time()
        return _collect(in_process=getattr(args, "in_process", False))
    except Exception as exc:
        logger.critical("CRASHED: attendance sync encountered a fatal error", exc_info=True)
        print(f"CRASHED: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
