import sqlite3
from dataclasses import replace

import pytest

import attendance_sync.db as db
from attendance_sync.db import (
    ACCESS_STORE,
    SQL_STORE,
    StoreConnection,
    StoreOperationError,
    build_access_connection_string,
    build_sql_server_connection_string,
    close_store,
    execute_with_retry,
    is_transient_error,
    read_dsn_file,
    store_connection,
)


def _counting_connection(path=":memory:"):
    opened = []

    def connect():
        conn = sqlite3.connect(path)
        opened.append(conn)
        return conn

    return StoreConnection(SQL_STORE, connect).open(), opened


@pytest.mark.parametrize(
    "message",
    [
        "[08S01] An existing connection was forcibly closed by the remote host",
        "[WinError 10038] An operation was attempted on something that is not a socket",
        "Connection reset by peer",
        "[Errno 32] Broken pipe",
        "[08S01] Communication link failure",
    ],
)
def test_transient_errors_are_recognized(message):
    assert is_transient_error(RuntimeError(message))


def test_other_errors_are_not_transient():
    assert not is_transient_error(sqlite3.IntegrityError("UNIQUE constraint failed"))
    assert not is_transient_error(ValueError("bad value"))


def test_retry_returns_first_result_without_reconnecting():
    connection, opened = _counting_connection()
    calls = []

    result = execute_with_retry(connection, lambda conn: calls.append(conn) or "ok", "probe")

    assert result == "ok"
    assert len(calls) == 1
    assert len(opened) == 1


def test_retry_reconnects_once_after_transient_failure():
    connection, opened = _counting_connection()
    calls = []

    def operation(conn):
        calls.append(conn.raw)
        if len(calls) == 1:
            raise OSError("Connection reset by peer")
        return 7

    assert execute_with_retry(connection, operation, "probe") == 7
    assert len(calls) == 2
    assert len(opened) == 2
    assert calls[1] is opened[1]
    assert connection.raw is opened[1]


def test_retry_gives_up_after_second_transient_failure():
    connection, opened = _counting_connection()
    calls = []

    def operation(conn):
        calls.append(conn)
        raise OSError("Broken pipe")

    with pytest.raises(StoreOperationError) as excinfo:
        execute_with_retry(connection, operation, "probe")

    assert len(calls) == 2
    assert len(opened) == 2
    assert isinstance(excinfo.value.__cause__, OSError)


def test_non_transient_failure_is_not_retried():
    connection, opened = _counting_connection()
    calls = []

    def operation(conn):
        calls.append(conn)
        raise ValueError("constraint violated")

    with pytest.raises(ValueError):
        execute_with_retry(connection, operation, "probe")

    assert len(calls) == 1
    assert len(opened) == 1


def test_failed_reconnect_raises_store_error():
    attempts = []

    def connect():
        attempts.append(1)
        if len(attempts) > 1:
            raise OSError("server unavailable")
        return sqlite3.connect(":memory:")

    connection = StoreConnection(ACCESS_STORE, connect).open()

    def operation(conn):
        raise OSError("connection reset")

    with pytest.raises(StoreOperationError):
        execute_with_retry(connection, operation, "probe")
    assert len(attempts) == 2


def test_dict_cursor_normalizes_placeholders_and_returns_dicts():
    connection, _ = _counting_connection()
    with connection.cursor() as cursor:
        cursor.execute("CREATE TABLE people (BioID INTEGER, EmpID TEXT)")
        cursor.execute("INSERT INTO people VALUES (%s, %s)", (42, "E042"))
        cursor.execute("INSERT INTO people VALUES (%s, %s)", [43, "E043"])
        cursor.execute("SELECT BioID, EmpID FROM people WHERE BioID = %s", 42)
        assert cursor.fetchone() == {"BioID": 42, "EmpID": "E042"}
        cursor.execute("SELECT EmpID FROM people ORDER BY BioID")
        assert cursor.fetchall() == [{"EmpID": "E042"}, {"EmpID": "E043"}]
        cursor.execute("SELECT EmpID FROM people WHERE BioID = %s", (99,))
        assert cursor.fetchone() is None


def test_dict_cursor_rejects_named_parameters():
    connection, _ = _counting_connection()
    with connection.cursor() as cursor:
        with pytest.raises(TypeError):
            cursor.execute("SELECT 1", {"name": "value"})


def test_transaction_rolls_back_on_error(tmp_path):
    path = tmp_path / "tx.db"
    connection, _ = _counting_connection(path)
    with connection.cursor() as cursor:
        cursor.execute("CREATE TABLE items (name TEXT)")
    connection.commit()

    with pytest.raises(RuntimeError):
        with connection.transaction():
            with connection.cursor() as cursor:
                cursor.execute("INSERT INTO items VALUES (%s)", ("lost",))
            raise RuntimeError("boom")

    with connection.transaction():
        with connection.cursor() as cursor:
            cursor.execute("INSERT INTO items VALUES (%s)", ("kept",))

    with connection.cursor() as cursor:
        cursor.execute("SELECT name FROM items")
        assert cursor.fetchall() == [{"name": "kept"}]


def test_closed_connection_refuses_work():
    connection, _ = _counting_connection()
    connection.close()
    assert not connection.is_open
    with pytest.raises(StoreOperationError):
        connection.cursor()


def test_close_store_swallows_close_errors():
    class Broken:
        def close(self):
            raise OSError("already gone")

    connection = StoreConnection(SQL_STORE, Broken).open()
    close_store(connection)
    close_store(None)
    assert not connection.is_open


def test_store_connection_closes_on_error():
    seen = []

    def opener(name):
        connection = StoreConnection(name, lambda: sqlite3.connect(":memory:")).open()
        seen.append(connection)
        return connection

    with pytest.raises(RuntimeError):
        with store_connection(ACCESS_STORE, opener) as connection:
            assert connection.name == ACCESS_STORE
            raise RuntimeError("boom")
    assert not seen[0].is_open


def test_open_store_wraps_connect_failures(settings, monkeypatch):
    def failing_connector(name, resolved):
        def connect():
            raise OSError("login timeout expired")

        return connect

    monkeypatch.setattr(db, "connector_for", failing_connector)
    with pytest.raises(StoreOperationError):
        db.open_store(SQL_STORE, settings)


def test_read_dsn_file(tmp_path):
    dsn = tmp_path / "hrms.dsn"
    dsn.write_text(
        "[ODBC]\nDRIVER={ODBC Driver 17 for SQL Server}\nserver = db01\nDATABASE=HRMS\nUID=sync\nPWD=p=ss\nAPP=ignored\n"
    )

    values = read_dsn_file(dsn)

    assert values == {
        "DRIVER": "{ODBC Driver 17 for SQL Server}",
        "SERVER": "db01",
        "DATABASE": "HRMS",
        "UID": "sync",
        "PWD": "p=ss",
    }


def test_read_dsn_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_dsn_file(tmp_path / "missing.dsn")


def test_sql_connection_string_prefers_dsn_file(settings):
    assert build_sql_server_connection_string(settings) == (
        "DRIVER={SQL Server};SERVER=db01;DATABASE=HRMS;UID=sync;PWD=secret;"
    )


def test_sql_connection_string_from_environment(settings, tmp_path, monkeypatch):
    monkeypatch.setattr(db.sys, "platform", "linux")
    env_settings = replace(
        settings,
        sql_dsn_file=tmp_path / "absent.dsn",
        db_server="10.1.1.5",
        db_name="HRMS",
        db_user="sync",
        db_pass="secret",
    )

    connection_string = build_sql_server_connection_string(env_settings)

    assert "DRIVER={/usr/lib/libtdsodbc.so};" in connection_string
    assert "SERVER=10.1.1.5;PORT=1433;" in connection_string
    assert "TDS_Version=7.0;" in connection_string


def test_access_connection_string(settings):
    connection_string = build_access_connection_string(settings)
    assert connection_string.startswith("DRIVER={Microsoft Access Driver (*.mdb, *.accdb)};")
    assert f"DBQ={settings.access_db_path};" in connection_string
    assert connection_string.endswith("PWD=szus;")
