from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any


class Direction(str, Enum):
    """Fixed IN/OUT label; stored as the single-letter code both stores use."""

    IN = "I"
    OUT = "O"

    @classmethod
    def parse(cls, value: Any) -> "Direction":
        text = str(value or "").strip().upper()
        if text in {"I", "IN"}:
            return cls.IN
        if text in {"O", "OUT"}:
            return cls.OUT
        raise ValueError(f"Unknown direction: {value!r}")


@dataclass(frozen=True)
class MachineConfiguration:
    logical_number: int
    address: str
    port: int
    network_password: int
    direction: Direction


@dataclass(frozen=True)
class RawLogEvent:
    """One access event exactly as a terminal reported it.

    Date and time stay as separate integers: terminals occasionally emit
    values that do not form a valid timestamp, and those must survive
    ingestion untouched.
    """

    logical_device_id: int
    physical_device_id: int
    enrollment_number: int
    verify_mode: int
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int
    direction: Direction | None = None
    reconciled: bool = False
    id: int | None = None

    @property
    def natural_key(self) -> tuple[Any, ...]:
        return (
            self.logical_device_id,
            self.enrollment_number,
            self.year,
            self.month,
            self.day,
            self.hour,
            self.minute,
            self.second,
            self.direction.value if self.direction else None,
        )

    def timestamp(self) -> datetime:
        # Raises ValueError for the out-of-range components some terminals produce.
        return datetime(self.year, self.month, self.day, self.hour, self.minute, self.second)

    def describe(self) -> str:
        direction = self.direction.value if self.direction else "?"
        return (
            f"Machine={self.logical_device_id}, Enroll={self.enrollment_number}, "
            f"DateTime={self.year}-{self.month:02d}-{self.day:02d} "
            f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}, InOut={direction}"
        )


@dataclass(frozen=True)
class AttendanceRecord:
    employee_code: str
    entry_date: date
    direction: Direction
    entry_time: time
    ticket_number: int = 0
    transfer_flag: int = 0
    updated_by: str | None = None
    location: str | None = None
    error_message: str | None = None

    @classmethod
    def from_raw(cls, event: RawLogEvent, employee_code: str) -> "AttendanceRecord":
        if event.direction is None:
            raise ValueError(f"Raw log {event.id} has no direction")
        moment = event.timestamp()
        return cls(
            employee_code=employee_code,
            entry_date=moment.date(),
            direction=event.direction,
            entry_time=moment.time(),
        )


@dataclass(frozen=True)
class ReconcileResult:
    processed: int = 0
    skipped: int = 0
    errors: int = 0
