"""Run orchestration: collect from every terminal, then reconcile.

Reconciliation can run in a child process so it starts with clean native
networking state, untouched by whatever the terminal SDK did during
collection. Otherwise the same phase runs in-process with identical
semantics.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
import sys
from collections import Counter
from functools import partial
from typing import Any, Callable, Sequence

from .config import Settings, project_root
from .db import ACCESS_STORE, SQL_STORE, StoreConnection, open_store, store_connection
from .devices import DeviceSdk, connect_device, disconnect_device, synchronize_clock
from .logging_setup import machine_log
from .models import MachineConfiguration, ReconcileResult
from .raw_logs import save_raw_log
from .reader import read_logs
from .reconciler import reconcile
from .settings_store import read_delete_all_mode, write_delete_all_mode

logger = logging.getLogger(__name__)

StoreOpener = Callable[[str], StoreConnection]


class ReconciliationProcessError(RuntimeError):
    """The isolated reconciliation process failed to start or exited non-zero."""


def _opener_for(settings: Settings, opener: StoreOpener | None) -> StoreOpener:
    return opener or partial(open_store, settings=settings)


def _collect_machine(
    machine: MachineConfiguration,
    sdk: DeviceSdk,
    *,
    delete_all_mode: bool,
    back_year_blocked: int,
    opener: StoreOpener,
) -> dict[str, Any]:
    counts: Counter[str] = Counter()
    # One pair of store connections per device, never shared across the loop.
    with store_connection(ACCESS_STORE, opener) as access_conn, store_connection(SQL_STORE, opener) as sql_conn:
        if not connect_device(sdk, machine):
            return {"machine": machine.logical_number, "status": "connect_failed"}
        try:
            events = read_logs(sdk, machine, delete_all_mode)
            counts["read"] = len(events)
            for event in events:
                outcome = save_raw_log(event, access_conn, sql_conn, back_year_blocked)
                if not outcome:
                    counts["blocked"] += 1
                for store_name, status in outcome.items():
                    counts[f"{store_name}_{status}"] += 1
        finally:
            disconnect_device(sdk)
            logger.info("Disconnected from machine %s", machine.logical_number)

    return {"machine": machine.logical_number, "status": "ok", **counts}


def run_collection(
    machines: Sequence[MachineConfiguration],
    sdk: DeviceSdk,
    *,
    settings: Settings,
    delete_all_mode: bool,
    opener: StoreOpener | None = None,
) -> dict[str, Any]:
    """Read and persist logs from each terminal in turn; one bad device never stops the rest."""
    resolved_opener = _opener_for(settings, opener)
    results: list[dict[str, Any]] = []
    for machine in machines:
        number = machine.logical_number
        with machine_log(settings.log_directory, number):
            logger.info("Processing machine %s at %s:%s", number, machine.address, machine.port)
            try:
                result = _collect_machine(
                    machine,
                    sdk,
                    delete_all_mode=delete_all_mode,
                    back_year_blocked=settings.back_year_blocked,
                    opener=resolved_opener,
                )
            except Exception as exc:
                logger.exception("Error processing machine %s", number)
                result = {"machine": number, "status": "error", "error": str(exc)}
        logger.info("Machine %s finished: %s", number, result)
        results.append(result)

    failed = [result["machine"] for result in results if result["status"] != "ok"]
    logger.info("Collection finished for %s machines (%s failed)", len(results), len(failed))
    return {"machines": results, "failed_machines": failed}


def run_reconciliation_phase(
    settings: Settings,
    delete_all_mode: bool,
    opener: StoreOpener | None = None,
) -> ReconcileResult:
    """Reconcile pending raw logs, then clear DeleteAll only if everything succeeded."""
    resolved_opener = _opener_for(settings, opener)
    with store_connection(ACCESS_STORE, resolved_opener) as access_conn, store_connection(
        SQL_STORE, resolved_opener
    ) as sql_conn:
        result = reconcile(access_conn, sql_conn)
        if delete_all_mode:
            write_delete_all_mode(access_conn, False)
            logger.info("DeleteAll mode set to false")
    return result


def reconciler_command(settings: Settings, delete_all_mode: bool) -> list[str]:
    base = shlex.split(settings.reconciler_command) if settings.reconciler_command else [
        sys.executable,
        "-m",
        "attendance_sync.batch",
    ]
    return [
        *base,
        f"--deleteAllMode={'true' if delete_all_mode else 'false'}",
        f"--logDirectory={settings.log_directory}",
    ]


def launch_isolated_reconciliation(settings: Settings, delete_all_mode: bool) -> None:
    command = reconciler_command(settings, delete_all_mode)
    logger.info("Launching reconciler: %s", " ".join(command))
    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            cwd=project_root(),
            check=False,
        )
    except OSError as exc:
        raise ReconciliationProcessError(f"Failed to start reconciler: {exc}") from exc

    if completed.stdout.strip():
        logger.info("Reconciler output:\n%s", completed.stdout.rstrip())
    if completed.stderr.strip():
        logger.error("Reconciler error output:\n%s", completed.stderr.rstrip())
    if completed.returncode != 0:
        raise ReconciliationProcessError(f"Reconciler failed with exit code: {completed.returncode}")
    logger.info("Reconciler completed successfully")


def _read_delete_all_flag(opener: StoreOpener) -> bool:
    try:
        with store_connection(ACCESS_STORE, opener) as access_conn:
            return read_delete_all_mode(access_conn)
    except Exception:
        logger.warning("Could not open %s store to read DeleteAll; assuming false", ACCESS_STORE, exc_info=True)
        return False


def run(
    settings: Settings,
    machines: Sequence[MachineConfiguration],
    sdk_factory: Callable[[], DeviceSdk],
    *,
    isolate: bool | None = None,
    opener: StoreOpener | None = None,
    launcher: Callable[[Settings, bool], None] = launch_isolated_reconciliation,
) -> dict[str, Any]:
    resolved_opener = _opener_for(settings, opener)
    delete_all_mode = _read_delete_all_flag(resolved_opener)
    logger.info("DeleteAll mode: %s", delete_all_mode)
    logger.info("Processing %s machines", len(machines))

    summary = run_collection(
        machines,
        sdk_factory(),
        settings=settings,
        delete_all_mode=delete_all_mode,
        opener=resolved_opener,
    )

    use_isolation = settings.isolate_reconciliation if isolate is None else isolate
    if use_isolation:
        launcher(settings, delete_all_mode)
    else:
        result = run_reconciliation_phase(settings, delete_all_mode, resolved_opener)
        summary["reconciliation"] = {
            "processed": result.processed,
            "skipped": result.skipped,
            "errors": result.errors,
        }
    summary["delete_all_mode"] = delete_all_mode
    return summary


def run_time_sync(
    machines: Sequence[MachineConfiguration],
    sdk: DeviceSdk,
    *,
    settings: Settings,
) -> list[int]:
    """Push host time to every terminal. Returns the machine numbers that failed."""
    failed: list[int] = []
    for machine in machines:
        number = machine.logical_number
        with machine_log(settings.log_directory, number, prefix="TLog_Machine"):
            try:
                if not connect_device(sdk, machine):
                    failed.append(number)
                    continue
                try:
                    if not synchronize_clock(sdk, machine):
                        failed.append(number)
                finally:
                    disconnect_device(sdk)
            except Exception:
                logger.exception("Error processing machine %s", number)
                failed.append(number)
    logger.info("Time sync finished for %s machines (%s failed)", len(machines), len(failed))
    return failed
