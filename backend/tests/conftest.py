import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, time
from pathlib import Path

import pytest

from attendance_sync.config import Settings
from attendance_sync.db import ACCESS_STORE, StoreConnection
from attendance_sync.devices import ERR_LOG_END
from attendance_sync.logging_setup import PACKAGE_LOGGER
from attendance_sync.models import Direction, MachineConfiguration, RawLogEvent

# The SQL Server driver binds these natively; SQLite needs to be told.
sqlite3.register_adapter(date, lambda value: value.isoformat())
sqlite3.register_adapter(time, lambda value: value.isoformat())

RAW_LOG_DDL = """
    CREATE TABLE [0RawLog] (
        ID INTEGER PRIMARY KEY AUTOINCREMENT,
        vTMachineNumber INTEGER,
        vSMachineNumber INTEGER,
        vSEnrollNumber INTEGER,
        vVerifyMode INTEGER,
        vYear INTEGER,
        vMonth INTEGER,
        vDay INTEGER,
        vHour INTEGER,
        vMinute INTEGER,
        vSecond INTEGER,
        vInOut TEXT,
        vtrfFlag TEXT
    )
"""

ACCESS_DDL = (
    RAW_LOG_DDL,
    "CREATE TABLE M_Executive (BioID INTEGER, EmpID TEXT)",
    "CREATE TABLE Settings (SettingName TEXT, SettingValue TEXT)",
)

SQL_DDL = (
    RAW_LOG_DDL,
    """
    CREATE TABLE AttenInfo (
        EmpCode TEXT,
        TicketNo INTEGER,
        EntryDate TEXT,
        InOutFlag TEXT,
        EntryTime TEXT,
        TrfFlag INTEGER,
        UpdateUID TEXT,
        Location TEXT,
        ErrMsg TEXT
    )
    """,
)


@dataclass
class Stores:
    access_path: Path
    sql_path: Path
    opened: list = field(default_factory=list)

    def path_for(self, name: str) -> Path:
        return self.access_path if name == ACCESS_STORE else self.sql_path

    def connection(self, name: str) -> StoreConnection:
        path = self.path_for(name)
        return StoreConnection(name, lambda: sqlite3.connect(path))

    def opener(self, name: str) -> StoreConnection:
        connection = self.connection(name).open()
        self.opened.append(connection)
        return connection

    def execute(self, name: str, sql: str, params=()) -> None:
        with sqlite3.connect(self.path_for(name)) as conn:
            conn.execute(sql, params)

    def query(self, name: str, sql: str, params=()) -> list:
        conn = sqlite3.connect(self.path_for(name))
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def count(self, name: str, table: str) -> int:
        return self.query(name, f"SELECT COUNT(*) FROM {table}")[0][0]


def _create(path: Path, statements) -> None:
    conn = sqlite3.connect(path)
    try:
        for statement in statements:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


@pytest.fixture()
def stores(tmp_path) -> Stores:
    access_path = tmp_path / "access.db"
    sql_path = tmp_path / "sql.db"
    _create(access_path, ACCESS_DDL)
    _create(sql_path, SQL_DDL)
    return Stores(access_path=access_path, sql_path=sql_path)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    access_db = tmp_path / "RCMSBio.mdb"
    access_db.write_bytes(b"")
    dsn = tmp_path / "ReadLogsHRMS.dsn"
    dsn.write_text("[ODBC]\nDRIVER=SQL Server\nSERVER=db01\nDATABASE=HRMS\nUID=sync\nPWD=secret\n")
    return Settings(
        access_db_path=access_db,
        access_db_password="szus",
        access_driver="Microsoft Access Driver (*.mdb, *.accdb)",
        sql_dsn_file=dsn,
        db_server="",
        db_port=1433,
        db_name="",
        db_user="",
        db_pass="",
        win_driver="SQL Server",
        nix_driver_path="/usr/lib/libtdsodbc.so",
        tds_version="7.0",
        connect_timeout=8,
        back_year_blocked=2023,
        log_directory=tmp_path / "Logs",
        log_level="INFO",
        machines_file=None,
        isolate_reconciliation=False,
        device_sdk_factory="",
        reconciler_command="",
    )


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)


def make_event(
    enroll: int = 42,
    when: tuple = (2024, 1, 10, 9, 0, 0),
    *,
    machine: int = 1,
    physical: int = 1,
    direction: Direction | None = Direction.IN,
    verify_mode: int = 1,
) -> RawLogEvent:
    year, month, day, hour, minute, second = when
    return RawLogEvent(
        logical_device_id=machine,
        physical_device_id=physical,
        enrollment_number=enroll,
        verify_mode=verify_mode,
        year=year,
        month=month,
        day=day,
        hour=hour,
        minute=minute,
        second=second,
        direction=direction,
    )


def make_machine(number: int = 1, direction: Direction = Direction.IN) -> MachineConfiguration:
    return MachineConfiguration(
        logical_number=number,
        address=f"10.0.0.{number}",
        port=5005,
        network_password=1,
        direction=direction,
    )


class FakeSdk:
    """Scripted terminal SDK. Records are keyed by logical machine number."""

    def __init__(
        self,
        records=None,
        *,
        read_errors=None,
        raise_after=None,
        unreachable=(),
        clock_failures=(),
    ):
        self.records = {number: list(events) for number, events in (records or {}).items()}
        self.read_errors = dict(read_errors or {})
        self.raise_after = dict(raise_after or {})
        self.unreachable = set(unreachable)
        self.clock_failures = set(clock_failures)
        self.error_code = 0
        self.read_mark = None
        self.calls = []
        self._queue = []
        self._yielded = 0
        self._current = None

    def set_connection_params(self, address, port, password):
        self.calls.append(("set_connection_params", address, port, password))
        return True

    def open(self, machine_number):
        self.calls.append(("open", machine_number))
        if machine_number in self.unreachable:
            self.error_code = 1
            return False
        self._current = machine_number
        return True

    def close(self):
        self.calls.append(("close",))
        self._current = None

    def enable(self, machine_number, enabled):
        self.calls.append(("enable", machine_number, enabled))
        return True

    def set_device_clock(self, machine_number):
        self.calls.append(("set_device_clock", machine_number))
        if machine_number in self.clock_failures:
            self.error_code = 5
            return False
        return True

    def last_error_code(self):
        return self.error_code

    def set_read_mark(self, value):
        self.read_mark = value

    def _start_read(self, machine_number):
        if machine_number in self.read_errors:
            self.error_code = self.read_errors[machine_number]
            return False
        self._queue = list(self.records.get(machine_number, []))
        self._yielded = 0
        if not self._queue:
            self.error_code = ERR_LOG_END
            return False
        self.error_code = 0
        return True

    def read_unread(self, machine_number):
        self.calls.append(("read_unread", machine_number))
        return self._start_read(machine_number)

    def read_all(self, machine_number):
        self.calls.append(("read_all", machine_number))
        return self._start_read(machine_number)

    def _next(self, machine_number):
        limit = self.raise_after.get(machine_number)
        if limit is not None and self._yielded >= limit:
            raise OSError("device stopped responding")
        if not self._queue:
            self.error_code = ERR_LOG_END
            return False, None
        self._yielded += 1
        return True, self._queue.pop(0)

    def get_next_unread(self, machine_number):
        return self._next(machine_number)

    def get_next_all(self, machine_number):
        return self._next(machine_number)


class FlakyConnection:
    """Wraps a DB-API connection and fails the next ``failures`` cursor() calls."""

    def __init__(self, raw, state, message="[08S01] An existing connection was forcibly closed by the remote host"):
        self._raw = raw
        self._state = state
        self._message = message

    def cursor(self):
        self._state["cursor_calls"] = self._state.get("cursor_calls", 0) + 1
        if self._state.get("failures", 0) > 0:
            self._state["failures"] -= 1
            raise sqlite3.OperationalError(self._message)
        return self._raw.cursor()

    def __getattr__(self, name):
        return getattr(self._raw, name)


class CommitFailingConnection:
    def __init__(self, raw):
        self._raw = raw

    def commit(self):
        raise sqlite3.OperationalError("disk I/O error")

    def __getattr__(self, name):
        return getattr(self._raw, name)
