from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "ATTENDANCE_SYNC_HOME"
_DOTENV_LOADED = False

DEFAULT_ACCESS_DRIVER = "Microsoft Access Driver (*.mdb, *.accdb)"


class ConfigurationError(RuntimeError):
    """Required configuration is missing or malformed; the run must not start."""


def ensure_env_loaded() -> None:
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return
    load_dotenv(dotenv_path=project_root() / ".env", override=False)
    _DOTENV_LOADED = True


def _to_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    text = value.strip()
    if not text:
        return default
    try:
        return int(text)
    except ValueError:
        return default


def _to_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _text(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip() or default


def project_root() -> Path:
    """Directory holding `.env`: ATTENDANCE_SYNC_HOME when set, else the working directory."""
    home = (os.getenv(HOME_ENV_VAR) or "").strip()
    if home:
        return Path(home).expanduser().resolve()
    return Path.cwd()


def resolve_path(value: str | Path) -> Path:
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return project_root() / path


def _default_nix_driver_path() -> str:
    if sys.platform == "darwin":
        return "/opt/homebrew/lib/libtdsodbc.so"
    return "/usr/lib/x86_64-linux-gnu/odbc/libtdsodbc.so"


@dataclass(frozen=True)
class Settings:
    access_db_path: Path
    access_db_password: str
    access_driver: str
    sql_dsn_file: Path
    db_server: str
    db_port: int
    db_name: str
    db_user: str
    db_pass: str
    win_driver: str
    nix_driver_path: str
    tds_version: str
    connect_timeout: int
    back_year_blocked: int
    log_directory: Path
    log_level: str
    machines_file: Path | None
    isolate_reconciliation: bool
    device_sdk_factory: str
    reconciler_command: str


def get_settings() -> Settings:
    ensure_env_loaded()
    machines_file = _text("MACHINES_FILE")
    return Settings(
        access_db_path=resolve_path(_text("ACCESS_DB_PATH", "RCMSBio.mdb")),
        access_db_password=os.getenv("ACCESS_DB_PASSWORD") or "szus",
        access_driver=_text("ACCESS_DRIVER", DEFAULT_ACCESS_DRIVER),
        sql_dsn_file=resolve_path(_text("SQL_DSN_FILE", "ReadLogsHRMS.dsn")),
        db_server=_text("DB_SERVER"),
        db_port=_to_int(os.getenv("DB_PORT"), 1433),
        db_name=_text("DB_NAME"),
        db_user=_text("DB_USER"),
        db_pass=os.getenv("DB_PASS") or "",
        win_driver=_text("WIN_DRIVER", "SQL Server"),
        nix_driver_path=_text("NIX_DRIVER_PATH", _default_nix_driver_path()),
        tds_version=_text("TDS_VERSION", "7.0"),
        connect_timeout=_to_int(os.getenv("DB_CONNECT_TIMEOUT"), 8),
        back_year_blocked=_to_int(os.getenv("BACK_YEAR_BLOCKED"), 2023),
        log_directory=resolve_path(_text("LOG_DIRECTORY", "Logs")),
        log_level=_text("LOG_LEVEL", "INFO").upper(),
        machines_file=resolve_path(machines_file) if machines_file else None,
        isolate_reconciliation=_to_bool(os.getenv("ISOLATE_RECONCILIATION"), True),
        device_sdk_factory=_text("DEVICE_SDK_FACTORY"),
        reconciler_command=_text("RECONCILER_COMMAND"),
    )


def validate_startup(settings: Settings) -> None:
    """Fail fast before any device or store I/O when a store is unreachable by config."""
    if not settings.access_db_path.is_file():
        raise ConfigurationError(f"Access database not found: {settings.access_db_path}")
    if not settings.sql_dsn_file.is_file() and not settings.db_server:
        raise ConfigurationError(
            f"SQL DSN file not found: {settings.sql_dsn_file} (and DB_SERVER is empty)"
        )
    if settings.machines_file is not None and not settings.machines_file.is_file():
        raise ConfigurationError(f"Machines file not found: {settings.machines_file}")


def log_settings(settings: Settings) -> None:
    logger.info(
        "Config: access=%s dsn=%s back_year_blocked=%s isolate_reconciliation=%s",
        settings.access_db_path,
        settings.sql_dsn_file if settings.sql_dsn_file.is_file() else settings.db_server,
        settings.back_year_blocked,
        settings.isolate_reconciliation,
    )
