from __future__ import annotations

import logging
from typing import Any

from .db import StoreConnection

logger = logging.getLogger(__name__)


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def resolve_employee_code(enrollment_number: int, access_conn: StoreConnection) -> str:
    """Map a terminal enrollment number to the company employee code.

    Falls back to the enrollment number itself when no mapping exists or the
    lookup fails; an unmapped person must never block reconciliation.
    """
    fallback = str(enrollment_number)
    try:
        with access_conn.cursor() as cursor:
            cursor.execute("SELECT EmpID FROM M_Executive WHERE BioID = %s", (enrollment_number,))
            row = cursor.fetchone() or {}
    except Exception as exc:
        logger.warning("Error mapping employee ID for enrollment %s: %s", enrollment_number, exc)
        return fallback

    return _clean_text(row.get("EmpID")) or fallback
