from __future__ import annotations

import dataclasses
import logging
from typing import Iterator

from .devices import ERR_LOG_END, ERR_SUCCESS, DeviceSdk, describe_device_error
from .models import MachineConfiguration, RawLogEvent

logger = logging.getLogger(__name__)


def iter_device_records(
    sdk: DeviceSdk,
    machine_number: int,
    full_history: bool,
) -> Iterator[RawLogEvent]:
    """Yield records from an already issued read request until the device runs dry.

    Single pass only: the device-side cursor cannot be rewound.
    """
    fetch_next = sdk.get_next_all if full_history else sdk.get_next_unread
    while True:
        has_more, event = fetch_next(machine_number)
        if not has_more or event is None:
            return
        yield event


def read_logs(
    sdk: DeviceSdk,
    machine: MachineConfiguration,
    full_history: bool,
) -> list[RawLogEvent]:
    number = machine.logical_number
    logger.info("Starting log read for Machine %s (DeleteAllMode: %s)", number, full_history)

    logs: list[RawLogEvent] = []
    try:
        # Arms incremental tracking; the protocol requires it before either read mode.
        sdk.set_read_mark(1)

        if full_history:
            logger.info("Reading all logs from Machine %s", number)
            read_ok = sdk.read_all(number)
        else:
            logger.info("Reading new logs from Machine %s", number)
            read_ok = sdk.read_unread(number)

        if not read_ok:
            code = sdk.last_error_code()
            if code == ERR_LOG_END:
                logger.info("No logs available on Machine %s (ERR_LOG_END)", number)
            else:
                logger.error(
                    "Failed to read logs from Machine %s at %s:%s. Error: %s (Code: %s)",
                    number,
                    machine.address,
                    machine.port,
                    describe_device_error(code),
                    code,
                )
            return logs

        for event in iter_device_records(sdk, number, full_history):
            logs.append(
                dataclasses.replace(event, logical_device_id=number, direction=machine.direction)
            )

        code = sdk.last_error_code()
        if code not in (ERR_SUCCESS, ERR_LOG_END):
            logger.error(
                "Error reading log data from Machine %s at %s:%s. Error: %s (Code: %s)",
                number,
                machine.address,
                machine.port,
                describe_device_error(code),
                code,
            )
        logger.info("Read %s logs from Machine %s", len(logs), number)
    except Exception:
        logger.exception(
            "Exception while reading logs from Machine %s at %s:%s; keeping %s logs read so far",
            number,
            machine.address,
            machine.port,
            len(logs),
        )
    return logs
