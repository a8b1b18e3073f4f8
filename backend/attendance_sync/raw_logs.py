from __future__ import annotations

import logging
from typing import Any

from .db import StoreConnection, execute_with_retry
from .models import Direction, RawLogEvent

logger = logging.getLogger(__name__)

RAW_LOG_TABLE = "[0RawLog]"

INSERTED = "inserted"
DUPLICATE = "duplicate"
FAILED = "failed"

_NATURAL_KEY_WHERE = """
    vTMachineNumber = %s
    AND vSEnrollNumber = %s
    AND vYear = %s
    AND vMonth = %s
    AND vDay = %s
    AND vHour = %s
    AND vMinute = %s
    AND vSecond = %s
    AND vInOut = %s
"""


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    return int(value)


def raw_log_exists(connection: StoreConnection, event: RawLogEvent) -> bool:
    with connection.cursor() as cursor:
        cursor.execute(
            f"SELECT COUNT(*) AS Total FROM {RAW_LOG_TABLE} WHERE {_NATURAL_KEY_WHERE}",
            event.natural_key,
        )
        row = cursor.fetchone() or {}
    return _to_int(row.get("Total")) > 0


def insert_raw_log(connection: StoreConnection, event: RawLogEvent) -> None:
    with connection.cursor() as cursor:
        cursor.execute(
            f"""
            INSERT INTO {RAW_LOG_TABLE}
                (vTMachineNumber, vSMachineNumber, vSEnrollNumber, vVerifyMode,
                 vYear, vMonth, vDay, vHour, vMinute, vSecond, vInOut, vtrfFlag)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, '0')
            """,
            (
                event.logical_device_id,
                event.physical_device_id,
                event.enrollment_number,
                event.verify_mode,
                event.year,
                event.month,
                event.day,
                event.hour,
                event.minute,
                event.second,
                event.direction.value if event.direction else None,
            ),
        )


def _insert_if_absent(connection: StoreConnection, event: RawLogEvent) -> bool:
    try:
        if raw_log_exists(connection, event):
            connection.rollback()
            return False
        insert_raw_log(connection, event)
        connection.commit()
        return True
    except Exception:
        try:
            connection.rollback()
        except Exception:
            logger.debug("Rollback on %s failed", connection.name, exc_info=True)
        raise


def save_raw_log(
    event: RawLogEvent,
    access_conn: StoreConnection,
    sql_conn: StoreConnection,
    back_year_blocked: int,
) -> dict[str, str]:
    """Persist one event into both stores, each deduplicated on its own.

    Returns the per-store outcome keyed by store name; an empty dict means the
    event predates ``back_year_blocked`` and was dropped. The stores share no
    transaction, so one can succeed while the other fails. Both are always
    attempted and the first failure is re-raised afterwards.
    """
    if event.year < back_year_blocked:
        logger.info(
            "Skipping log from year %s (before BackYearBlocked %s): Machine=%s, Enroll=%s",
            event.year,
            back_year_blocked,
            event.logical_device_id,
            event.enrollment_number,
        )
        return {}

    outcome: dict[str, str] = {}
    failure: Exception | None = None
    for connection in (access_conn, sql_conn):
        try:
            inserted = execute_with_retry(
                connection,
                lambda conn: _insert_if_absent(conn, event),
                f"Insert raw log to {connection.name}",
            )
        except Exception as exc:
            logger.error("Error saving raw log to %s: %s", connection.name, event.describe(), exc_info=True)
            outcome[connection.name] = FAILED
            if failure is None:
                failure = exc
            continue

        outcome[connection.name] = INSERTED if inserted else DUPLICATE
        if inserted:
            logger.info("Inserted to %s: %s", connection.name, event.describe())
        else:
            logger.info("Duplicate in %s: %s", connection.name, event.describe())

    if failure is not None:
        raise failure
    return outcome


def _row_to_event(row: dict[str, Any]) -> RawLogEvent:
    in_out = row.get("vInOut")
    return RawLogEvent(
        id=_to_int(row.get("ID")),
        logical_device_id=_to_int(row.get("vTMachineNumber")),
        physical_device_id=_to_int(row.get("vSMachineNumber")),
        enrollment_number=_to_int(row.get("vSEnrollNumber")),
        verify_mode=_to_int(row.get("vVerifyMode")),
        year=_to_int(row.get("vYear")),
        month=_to_int(row.get("vMonth")),
        day=_to_int(row.get("vDay")),
        hour=_to_int(row.get("vHour")),
        minute=_to_int(row.get("vMinute")),
        second=_to_int(row.get("vSecond")),
        direction=Direction.parse(in_out) if in_out else None,
        reconciled=False,
    )


def fetch_unreconciled(connection: StoreConnection) -> list[RawLogEvent]:
    # Per-person chronological order keeps each person's IN/OUT punches adjacent.
    with connection.cursor() as cursor:
        cursor.execute(
            f"""
            SELECT ID, vTMachineNumber, vSMachineNumber, vSEnrollNumber, vVerifyMode,
                   vYear, vMonth, vDay, vHour, vMinute, vSecond, vInOut
            FROM {RAW_LOG_TABLE}
            WHERE vtrfFlag IS NULL OR vtrfFlag = '0'
            ORDER BY vSEnrollNumber, vYear, vMonth, vDay, vHour, vMinute, vSecond
            """
        )
        rows = cursor.fetchall()
    return [_row_to_event(row) for row in rows]


def mark_reconciled(connection: StoreConnection, raw_log_id: int) -> None:
    with connection.cursor() as cursor:
        cursor.execute(f"UPDATE {RAW_LOG_TABLE} SET vtrfFlag = '1' WHERE ID = %s", (raw_log_id,))
