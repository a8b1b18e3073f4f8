from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Sequence, TypeVar

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

ACCESS_STORE = "access"
SQL_STORE = "sql"

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "forcibly closed by the remote host",
    "not a socket",
    "connection reset",
    "broken pipe",
    "communication link failure",
)

_DSN_KEYS = ("DRIVER", "SERVER", "DATABASE", "UID", "PWD")


class StoreOperationError(RuntimeError):
    """A store operation failed for good: the single retry was spent or reconnecting failed."""


def _clean_driver(driver_value: str) -> str:
    return driver_value.strip().strip("{}")


def read_dsn_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        raise FileNotFoundError(f"DSN file not found: {path}")
    values = {key: "" for key in _DSN_KEYS}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep:
            continue
        key = key.strip().upper()
        if key in values:
            values[key] = value.strip()
    return values


def build_sql_server_connection_string(settings: Settings) -> str:
    if settings.sql_dsn_file.is_file():
        dsn = read_dsn_file(settings.sql_dsn_file)
        return (
            f"DRIVER={{{_clean_driver(dsn['DRIVER'])}}};"
            f"SERVER={dsn['SERVER']};"
            f"DATABASE={dsn['DATABASE']};"
            f"UID={dsn['UID']};"
            f"PWD={dsn['PWD']};"
        )

    if sys.platform == "win32":
        return (
            f"DRIVER={{{_clean_driver(settings.win_driver)}}};"
            f"SERVER={settings.db_server},{settings.db_port};"
            f"DATABASE={settings.db_name};"
            f"UID={settings.db_user};"
            f"PWD={settings.db_pass};"
            "Trusted_Connection=no;"
        )

    return (
        f"DRIVER={{{_clean_driver(settings.nix_driver_path)}}};"
        f"SERVER={settings.db_server};"
        f"PORT={settings.db_port};"
        f"DATABASE={settings.db_name};"
        f"UID={settings.db_user};"
        f"PWD={settings.db_pass};"
        f"TDS_Version={settings.tds_version};"
        "Encrypt=no;"
    )


def build_access_connection_string(settings: Settings) -> str:
    return (
        f"DRIVER={{{_clean_driver(settings.access_driver)}}};"
        f"DBQ={settings.access_db_path};"
        f"PWD={settings.access_db_password};"
    )


def _normalize_sql_placeholders(sql: str) -> str:
    # Some query fragments still use `%s` placeholders. ODBC expects `?`.
    return sql.replace("%s", "?")


def _normalize_params(params: Any | None) -> tuple[Any, ...]:
    if params is None:
        return ()
    if isinstance(params, tuple):
        return params
    if isinstance(params, list):
        return tuple(params)
    if isinstance(params, dict):
        raise TypeError("Named parameters are not supported for this DB cursor.")
    if isinstance(params, (str, bytes)):
        return (params,)
    if isinstance(params, Iterable):
        return tuple(params)
    return (params,)


def _row_to_dict(description: Sequence[Any] | None, row: Any) -> dict[str, Any]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)

    columns = [str(column[0]) for column in (description or [])]
    if not columns:
        return {}
    return {columns[index]: row[index] for index in range(len(columns))}


def rows_to_dicts(cursor: Any, rows: Sequence[Any] | None = None) -> list[dict[str, Any]]:
    if rows is None:
        rows = cursor.fetchall()
    description = getattr(cursor, "description", None)
    return [_row_to_dict(description, row) for row in rows]


class DictCursor:
    def __init__(self, cursor: Any):
        self._cursor = cursor

    @property
    def description(self) -> Any:
        return self._cursor.description

    def execute(self, sql: str, params: Any | None = None) -> "DictCursor":
        normalized_sql = _normalize_sql_placeholders(sql)
        normalized_params = _normalize_params(params)
        if normalized_params:
            self._cursor.execute(normalized_sql, normalized_params)
        else:
            self._cursor.execute(normalized_sql)
        return self

    def fetchone(self) -> dict[str, Any] | None:
        row = self._cursor.fetchone()
        if row is None:
            return None
        return _row_to_dict(self._cursor.description, row)

    def fetchall(self) -> list[dict[str, Any]]:
        return rows_to_dicts(self._cursor, self._cursor.fetchall())

    def close(self) -> None:
        self._cursor.close()

    def __enter__(self) -> "DictCursor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class StoreConnection:
    """Single-owner handle on one store.

    Holds the live DB-API connection together with the factory that made it,
    so the connection can be torn down and rebuilt in place after a
    transient failure while callers keep the same handle.
    """

    def __init__(self, name: str, connect: Callable[[], Any]):
        self.name = name
        self._connect = connect
        self._raw: Any | None = None

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<StoreConnection {self.name} {state}>"

    @property
    def is_open(self) -> bool:
        return self._raw is not None

    @property
    def raw(self) -> Any:
        if self._raw is None:
            raise StoreOperationError(f"{self.name} connection is not open")
        return self._raw

    def open(self) -> "StoreConnection":
        if self._raw is None:
            self._raw = self._connect()
        return self

    def close(self) -> None:
        raw, self._raw = self._raw, None
        if raw is not None:
            raw.close()

    def reopen(self) -> None:
        try:
            self.close()
        except Exception:
            logger.warning("Ignoring error while closing %s connection before reopen", self.name, exc_info=True)
        self.open()

    def cursor(self) -> DictCursor:
        return DictCursor(self.raw.cursor())

    def commit(self) -> None:
        self.raw.commit()

    def rollback(self) -> None:
        self.raw.rollback()

    @contextmanager
    def transaction(self) -> Iterator["StoreConnection"]:
        try:
            yield self
            self.commit()
        except Exception:
            try:
                self.rollback()
                logger.info("Transaction on %s rolled back", self.name)
            except Exception:
                logger.exception("Error rolling back transaction on %s", self.name)
            raise


def _odbc_connector(connection_string: str, timeout: int) -> Callable[[], Any]:
    def connect() -> Any:
        import pyodbc

        conn = pyodbc.connect(connection_string, timeout=timeout)
        conn.autocommit = False
        return conn

    return connect


def connector_for(name: str, settings: Settings) -> Callable[[], Any]:
    if name == ACCESS_STORE:
        return _odbc_connector(build_access_connection_string(settings), settings.connect_timeout)
    if name == SQL_STORE:
        return _odbc_connector(build_sql_server_connection_string(settings), settings.connect_timeout)
    raise ValueError(f"Unknown store: {name!r}")


def open_store(name: str, settings: Settings | None = None) -> StoreConnection:
    resolved = settings or get_settings()
    connection = StoreConnection(name, connector_for(name, resolved))
    try:
        return connection.open()
    except Exception as exc:
        if is_transient_error(exc):
            raise StoreOperationError(f"Transient {name} connection error: {exc}") from exc
        raise StoreOperationError(f"Failed to connect to {name} store: {exc}") from exc


def close_store(connection: StoreConnection | None) -> None:
    if connection is None:
        return
    try:
        connection.close()
    except Exception:
        logger.warning("Error closing %s connection", connection.name, exc_info=True)


def reopen_store(connection: StoreConnection) -> None:
    try:
        connection.reopen()
    except Exception as exc:
        raise StoreOperationError(f"Failed to reopen {connection.name} connection: {exc}") from exc


@contextmanager
def store_connection(
    name: str,
    opener: Callable[[str], StoreConnection] | None = None,
) -> Iterator[StoreConnection]:
    connection = opener(name) if opener else open_store(name)
    try:
        yield connection
    finally:
        close_store(connection)


def is_transient_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def execute_with_retry(
    connection: StoreConnection,
    operation: Callable[[StoreConnection], T],
    operation_name: str = "Database operation",
) -> T:
    """Run ``operation`` once; on a transient failure reconnect and run it exactly once more."""
    try:
        return operation(connection)
    except Exception as exc:
        if not is_transient_error(exc):
            raise
        logger.warning("Transient error detected during %s: %s", operation_name, exc)
        logger.info("Attempting to reconnect %s and retry operation...", connection.name)

    try:
        reopen_store(connection)
        logger.info("Connection %s reopened, retrying %s", connection.name, operation_name)
        result = operation(connection)
    except Exception as retry_exc:
        logger.error("%s failed after retry", operation_name, exc_info=True)
        raise StoreOperationError(f"{operation_name} failed after retry: {retry_exc}") from retry_exc

    logger.info("%s succeeded after retry", operation_name)
    return result
