from __future__ import annotations

import logging
from typing import Any

from .db import StoreConnection
from .employees import resolve_employee_code
from .models import AttendanceRecord, ReconcileResult
from .raw_logs import fetch_unreconciled, mark_reconciled

logger = logging.getLogger(__name__)

ATTENDANCE_TABLE = "AttenInfo"


def attendance_record_exists(connection: StoreConnection, record: AttendanceRecord) -> bool:
    with connection.cursor() as cursor:
        cursor.execute(
            f"""
            SELECT COUNT(*) AS Total
            FROM {ATTENDANCE_TABLE}
            WHERE EmpCode = %s
              AND EntryDate = %s
              AND InOutFlag = %s
              AND EntryTime = %s
            """,
            (record.employee_code, record.entry_date, record.direction.value, record.entry_time),
        )
        row: dict[str, Any] = cursor.fetchone() or {}
    return int(row.get("Total") or 0) > 0


def insert_attendance_record(connection: StoreConnection, record: AttendanceRecord) -> bool:
    """Insert unless the natural key is already present. Returns True when a row was written."""
    if attendance_record_exists(connection, record):
        return False
    with connection.cursor() as cursor:
        cursor.execute(
            f"""
            INSERT INTO {ATTENDANCE_TABLE}
                (EmpCode, TicketNo, EntryDate, InOutFlag, EntryTime, TrfFlag, UpdateUID, Location, ErrMsg)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.employee_code,
                record.ticket_number,
                record.entry_date,
                record.direction.value,
                record.entry_time,
                record.transfer_flag,
                record.updated_by,
                record.location,
                record.error_message,
            ),
        )
    return True


def reconcile(access_conn: StoreConnection, sql_conn: StoreConnection) -> ReconcileResult:
    """Turn every unreconciled raw log into an attendance record in one transaction.

    The pending rows are read in full before any write, since the store cannot
    iterate a result set while a write transaction is open on the same
    connection. Per-row failures are counted and skipped. A failed commit rolls
    the whole batch back and leaves every raw row unreconciled for the next run.
    """
    logger.info("Starting batch processing of raw logs...")
    pending = fetch_unreconciled(sql_conn)
    logger.info("Found %s unreconciled raw logs", len(pending))

    processed = 0
    skipped = 0
    errors = 0
    try:
        with sql_conn.transaction():
            for event in pending:
                try:
                    employee_code = resolve_employee_code(event.enrollment_number, access_conn)
                    record = AttendanceRecord.from_raw(event, employee_code)
                    inserted = insert_attendance_record(sql_conn, record)
                    mark_reconciled(sql_conn, event.id)
                except Exception:
                    errors += 1
                    logger.exception(
                        "Error processing raw log ID=%s, Enroll=%s", event.id, event.enrollment_number
                    )
                    continue

                if inserted:
                    processed += 1
                    logger.info(
                        "Processed: ID=%s, EmpCode=%s, DateTime=%s %s, InOut=%s",
                        event.id,
                        employee_code,
                        record.entry_date.isoformat(),
                        record.entry_time.isoformat(),
                        record.direction.value,
                    )
                else:
                    skipped += 1
                    logger.info("Attendance already present for raw log ID=%s; marked reconciled", event.id)
    except Exception:
        logger.exception("Batch processing failed; raw logs remain unreconciled for next run")
        raise

    result = ReconcileResult(processed=processed, skipped=skipped, errors=errors)
    logger.info(
        "Batch processing completed: Processed=%s, Skipped=%s, Errors=%s",
        result.processed,
        result.skipped,
        result.errors,
    )
    return result
