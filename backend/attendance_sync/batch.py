"""Isolated reconciliation entry point.

Spawned by the collector as ``<python> -m attendance_sync.batch
--deleteAllMode=<true|false> --logDirectory=<path>``. Exit code 0 means the
batch committed; 1 means invalid arguments, missing configuration or a
reconciliation failure. In every failure case raw logs stay unreconciled.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from .config import ConfigurationError, get_settings, log_settings, resolve_path, validate_startup
from .logging_setup import configure_logging
from .pipeline import run_reconciliation_phase

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def _parse_bool_arg(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


def _non_empty_path(value: str) -> Path:
    text = value.strip().strip('"')
    if not text:
        raise argparse.ArgumentTypeError("log directory cannot be empty")
    return resolve_path(text)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="attendance-reconcile",
        description="Isolated batch processing of raw logs into attendance records",
    )
    parser.add_argument(
        "--deleteAllMode",
        dest="delete_all_mode",
        type=_parse_bool_arg,
        default=False,
        metavar="<true|false>",
        help="clear the DeleteAll setting after a successful batch (default: false)",
    )
    parser.add_argument(
        "--logDirectory",
        dest="log_directory",
        type=_non_empty_path,
        default=None,
        metavar="<path>",
        help="directory for the batch log file (default: LOG_DIRECTORY)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    log_directory = args.log_directory or settings.log_directory

    try:
        configure_logging(log_directory, "BatchProcessor_", settings.log_level)
    except OSError as exc:
        print(f"Failed to initialize logging: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    logger.info("BatchProcessor started in isolated process")
    logger.info("Arguments: DeleteAllMode=%s, LogDirectory=%s", args.delete_all_mode, log_directory)
    try:
        validate_startup(settings)
        log_settings(settings)
        result = run_reconciliation_phase(settings, args.delete_all_mode)
    except ConfigurationError as exc:
        logger.error("Configuration validation failed: %s", exc)
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as exc:
        logger.exception("BatchProcessor failed")
        print(f"BatchProcessor failed: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    logger.info(
        "BatchProcessor completed successfully (processed=%s, skipped=%s, errors=%s)",
        result.processed,
        result.skipped,
        result.errors,
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
