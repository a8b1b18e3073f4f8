from __future__ import annotations

import importlib
import logging
from typing import Callable, Protocol

from .config import ConfigurationError
from .models import MachineConfiguration, RawLogEvent

logger = logging.getLogger(__name__)

ERR_SUCCESS = 0
ERR_LOG_END = 6

_ERROR_MESSAGES = {
    0: "SUCCESS - Operation completed successfully",
    1: "ERR_COMPORT_ERROR - Communication port error (device unreachable or network issue)",
    2: "ERR_WRITE_FAIL - Write operation failed (device may be busy or disconnected)",
    3: "ERR_READ_FAIL - Read operation failed (device may be busy or disconnected)",
    4: "ERR_INVALID_PARAM - Invalid parameter (check IP address, port, or machine number)",
    5: "ERR_NON_CARRYOUT - Operation not carried out (device may not support this operation)",
    6: "ERR_LOG_END - End of log data (no more records available)",
    7: "ERR_MEMORY - Memory error (device or SDK memory issue)",
    8: "ERR_MULTIUSER - Multiple user error (another connection is active)",
}


class DeviceSdk(Protocol):
    """Terminal SDK capability. One instance drives one device at a time."""

    def set_connection_params(self, address: str, port: int, password: int) -> bool: ...

    def open(self, machine_number: int) -> bool: ...

    def close(self) -> None: ...

    def enable(self, machine_number: int, enabled: bool) -> bool: ...

    def set_device_clock(self, machine_number: int) -> bool: ...

    def last_error_code(self) -> int: ...

    def set_read_mark(self, value: int) -> None: ...

    def read_unread(self, machine_number: int) -> bool: ...

    def read_all(self, machine_number: int) -> bool: ...

    def get_next_unread(self, machine_number: int) -> tuple[bool, RawLogEvent | None]: ...

    def get_next_all(self, machine_number: int) -> tuple[bool, RawLogEvent | None]: ...


def describe_device_error(code: int) -> str:
    return _ERROR_MESSAGES.get(code, f"UNKNOWN_ERROR - Unrecognized error code: {code}")


def _log_device_failure(action: str, machine: MachineConfiguration, code: int) -> None:
    logger.error(
        "Failed to %s device %s at %s:%s - Error: %s (Code: %s)",
        action,
        machine.logical_number,
        machine.address,
        machine.port,
        describe_device_error(code),
        code,
    )


def connect_device(sdk: DeviceSdk, machine: MachineConfiguration) -> bool:
    logger.info(
        "Attempting to connect to device %s at %s:%s",
        machine.logical_number,
        machine.address,
        machine.port,
    )
    try:
        if not sdk.set_connection_params(machine.address, machine.port, machine.network_password):
            _log_device_failure("set connection parameters for", machine, sdk.last_error_code())
            return False
        if not sdk.open(machine.logical_number):
            _log_device_failure("open communication port for", machine, sdk.last_error_code())
            return False
    except Exception:
        logger.exception("Exception while connecting to device %s", machine.logical_number)
        return False

    logger.info("Connected to device %s at %s:%s", machine.logical_number, machine.address, machine.port)
    return True


def disconnect_device(sdk: DeviceSdk) -> None:
    try:
        sdk.close()
        logger.info("Communication port closed")
    except Exception:
        logger.exception("Exception while disconnecting from device")


def _reenable(sdk: DeviceSdk, machine_number: int, reason: str) -> None:
    try:
        sdk.enable(machine_number, True)
        logger.info("Device %s re-enabled after %s", machine_number, reason)
    except Exception:
        logger.exception("Failed to re-enable device %s after %s", machine_number, reason)


def synchronize_clock(sdk: DeviceSdk, machine: MachineConfiguration) -> bool:
    """Set the terminal clock to host time.

    The device is disabled while its clock changes so no punch is stamped
    mid-update, and is always re-enabled afterwards, also on failure.
    """
    number = machine.logical_number
    try:
        logger.info("Disabling device %s for clock update", number)
        if not sdk.enable(number, False):
            _log_device_failure("disable", machine, sdk.last_error_code())
            return False

        if not sdk.set_device_clock(number):
            _log_device_failure("set clock on", machine, sdk.last_error_code())
            _reenable(sdk, number, "clock update failure")
            return False

        if not sdk.enable(number, True):
            _log_device_failure("re-enable", machine, sdk.last_error_code())
            return False
    except Exception:
        logger.exception("Exception during clock synchronization for device %s", number)
        _reenable(sdk, number, "exception")
        return False

    logger.info("Clock synchronized for device %s", number)
    return True


def load_sdk_factory(spec: str) -> Callable[[], DeviceSdk]:
    """Resolve a ``package.module:callable`` reference to a device SDK factory."""
    module_name, sep, attribute = spec.partition(":")
    if not spec or not sep or not module_name or not attribute:
        raise ConfigurationError(
            f"DEVICE_SDK_FACTORY must look like 'package.module:callable', got {spec!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import device SDK module {module_name!r}: {exc}") from exc
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigurationError(f"{spec!r} does not name a callable")
    return factory
