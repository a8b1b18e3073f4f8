from __future__ import annotations

import json
import logging
from typing import Any

from .config import ConfigurationError, Settings
from .models import Direction, MachineConfiguration

logger = logging.getLogger(__name__)

DEFAULT_MACHINES: tuple[MachineConfiguration, ...] = tuple(
    MachineConfiguration(
        logical_number=number,
        address=f"192.168.2.{223 + number}",
        port=5005,
        network_password=1,
        direction=Direction.IN if number % 2 else Direction.OUT,
    )
    for number in range(1, 7)
)


def _machine_from_entry(entry: Any, index: int) -> MachineConfiguration:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Machine entry #{index} must be an object")
    try:
        return MachineConfiguration(
            logical_number=int(entry["number"]),
            address=str(entry["address"]).strip(),
            port=int(entry.get("port", 5005)),
            network_password=int(entry.get("password", 1)),
            direction=Direction.parse(entry["direction"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Machine entry #{index} is invalid: {exc}") from exc


def load_machines(settings: Settings) -> list[MachineConfiguration]:
    if settings.machines_file is None:
        return list(DEFAULT_MACHINES)

    try:
        payload = json.loads(settings.machines_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot read machines file {settings.machines_file}: {exc}") from exc
    if not isinstance(payload, list) or not payload:
        raise ConfigurationError(f"Machines file {settings.machines_file} must hold a non-empty list")

    machines = [_machine_from_entry(entry, index) for index, entry in enumerate(payload, start=1)]
    numbers = [machine.logical_number for machine in machines]
    if len(set(numbers)) != len(numbers):
        raise ConfigurationError(f"Duplicate logical machine numbers in {settings.machines_file}")

    logger.info("Loaded %s machine configurations from %s", len(machines), settings.machines_file)
    return machines
