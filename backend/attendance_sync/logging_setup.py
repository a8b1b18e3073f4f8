from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

PACKAGE_LOGGER = "attendance_sync"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d%H%M%S")


def _file_handler(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    return handler


def configure_logging(log_directory: Path, prefix: str, level: str = "INFO") -> Path:
    """Send the package log to a fresh timestamped file and to stdout.

    Stdout rather than stderr: the isolated reconciler's parent treats
    anything on stderr as error output.
    """
    log_directory.mkdir(parents=True, exist_ok=True)
    log_path = log_directory / f"{prefix}{_timestamp()}.txt"

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    package_logger.addHandler(_file_handler(log_path))
    package_logger.addHandler(console)
    return log_path


@contextmanager
def machine_log(
    log_directory: Path | None,
    machine_number: int,
    prefix: str = "Log_Machine",
) -> Iterator[Path | None]:
    if log_directory is None:
        yield None
        return

    log_path = log_directory / f"{prefix}{machine_number}_{_timestamp()}.txt"
    try:
        log_directory.mkdir(parents=True, exist_ok=True)
        handler = _file_handler(log_path)
    except OSError:
        logger.warning("Cannot open machine log %s; continuing without it", log_path, exc_info=True)
        yield None
        return

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    previous_level = package_logger.level
    # Without configure_logging the root WARNING level would keep INFO out of the file.
    if package_logger.level == logging.NOTSET:
        package_logger.setLevel(logging.INFO)
    package_logger.addHandler(handler)
    try:
        yield log_path
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)
        handler.close()
