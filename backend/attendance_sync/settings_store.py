from __future__ import annotations

import logging

from .db import StoreConnection, execute_with_retry

logger = logging.getLogger(__name__)

DELETE_ALL_SETTING = "DeleteAll"


def read_delete_all_mode(access_conn: StoreConnection) -> bool:
    try:
        with access_conn.cursor() as cursor:
            cursor.execute(
                "SELECT SettingValue FROM Settings WHERE SettingName = %s",
                (DELETE_ALL_SETTING,),
            )
            row = cursor.fetchone()
    except Exception:
        logger.warning("Could not read %s setting; assuming false", DELETE_ALL_SETTING, exc_info=True)
        return False

    if not row:
        return False
    return str(row.get("SettingValue") or "").strip() == "1"


def _write_flag(connection: StoreConnection, value: bool) -> None:
    setting_value = "1" if value else "0"
    with connection.transaction():
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS Total FROM Settings WHERE SettingName = %s",
                (DELETE_ALL_SETTING,),
            )
            exists = int((cursor.fetchone() or {}).get("Total") or 0) > 0
            if exists:
                cursor.execute(
                    "UPDATE Settings SET SettingValue = %s WHERE SettingName = %s",
                    (setting_value, DELETE_ALL_SETTING),
                )
            else:
                cursor.execute(
                    "INSERT INTO Settings (SettingName, SettingValue) VALUES (%s, %s)",
                    (DELETE_ALL_SETTING, setting_value),
                )


def write_delete_all_mode(access_conn: StoreConnection, value: bool) -> None:
    execute_with_retry(
        access_conn,
        lambda conn: _write_flag(conn, value),
        f"Write {DELETE_ALL_SETTING} setting",
    )
