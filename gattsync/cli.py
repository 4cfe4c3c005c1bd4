"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path

import typer

from gattsync.core.device import Device
from gattsync.core.device_match import identity_matches
from gattsync.core.errors import GattsyncError
from gattsync.core.model import Parameters, StatusSnapshot
from gattsync.core.spec_loader import LoadedDeviceSpec, load_device_spec
from gattsync.core.status import snapshot_to_dicts
from gattsync.transports.ble_gatt import BleakSession, discover_peripherals

app = typer.Typer(help="Keep a BLE peripheral's GATT characteristics in sync with a YAML device spec")

LOGGER = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(spec_file: Path) -> LoadedDeviceSpec:
    loaded = load_device_spec(spec_file)
    for warning in loaded.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return loaded


class StatusPrinter:
    """Publishes each snapshot as a JSON line, optionally mirrored to a file."""

    def __init__(self, status_file: Path | None = None) -> None:
        self.status_file = status_file

    def __call__(self, name: str, snapshot: StatusSnapshot) -> None:
        document = {"device": name, "properties": snapshot_to_dicts(snapshot)}
        typer.echo(json.dumps(document, sort_keys=True))
        if self.status_file is not None:
            self.status_file.write_text(json.dumps(document, indent=2, sort_keys=True) + "\n", encoding="utf-8")


async def _serve(device: Device, loaded: LoadedDeviceSpec) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, device.shutdown)
        except NotImplementedError:
            LOGGER.debug("Signal handlers are not supported on this platform")
            break
    device.configure(loaded.spec)
    await device.wait()


@app.command("run")
def run_device(
    spec_file: Path = typer.Argument(..., help="YAML device spec"),
    sync_interval: float = typer.Option(
        30.0, "--sync-interval", "-i", min=0.0, envvar="GATTSYNC_SYNC_INTERVAL", help="Seconds between resync cycles"
    ),
    timeout: float = typer.Option(
        60.0, "--timeout", min=0.0, envvar="GATTSYNC_TIMEOUT", help="Max seconds per cycle, 0 waits forever"
    ),
    observation_window: float = typer.Option(
        5.0, "--observation-window", min=0.0, help="Seconds to keep the link open for notifications"
    ),
    carry_status: bool = typer.Option(
        False, "--carry-status", help="Start each cycle from the previous cycle's status"
    ),
    adapter: str | None = typer.Option(None, "--adapter", envvar="GATTSYNC_ADAPTER", help="Bluetooth adapter, e.g. hci0"),
    status_file: Path | None = typer.Option(None, "--status-file", help="Also write the latest status to this file"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Resync the device described by SPEC_FILE until interrupted."""
    _setup_logging(verbose)
    try:
        loaded = _load(spec_file)
        params = Parameters(
            sync_interval=sync_interval,
            timeout=timeout or None,
            observation_window=observation_window,
            carry_status=carry_status,
        )
        device = Device(loaded.name, StatusPrinter(status_file), params, BleakSession(adapter=adapter))
        asyncio.run(_serve(device, loaded))
    except GattsyncError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("check")
def check_spec(spec_file: Path = typer.Argument(..., help="YAML device spec")) -> None:
    """Validate SPEC_FILE and list its properties."""
    try:
        loaded = _load(spec_file)
        protocol = loaded.spec.protocol
        typer.echo(
            f"{loaded.name}: name={protocol.name or '<any>'} "
            f"mac={protocol.mac_address or '<any>'}"
        )
        for prop in loaded.spec.properties:
            mode = getattr(prop.access_mode, "value", prop.access_mode)
            line = f"  {prop.name}: {mode} {prop.visitor.characteristic_uuid}"
            if prop.visitor.data_write:
                line += f" [{', '.join(sorted(prop.visitor.data_write))}]"
            if prop.visitor.default_value:
                line += f" default={prop.visitor.default_value}"
            typer.echo(line)
    except GattsyncError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices(
    duration: float = typer.Option(5.0, "--duration", min=0.5, help="Scan duration in seconds"),
    spec_file: Path | None = typer.Option(None, "--spec", help="Mark peripherals matching this device spec"),
    adapter: str | None = typer.Option(None, "--adapter", envvar="GATTSYNC_ADAPTER"),
) -> None:
    """Scan for nearby BLE peripherals."""
    try:
        loaded = _load(spec_file) if spec_file else None
        found = asyncio.run(discover_peripherals(duration, adapter=adapter))
        if not found:
            typer.echo("No BLE peripherals found")
            return

        for address, advertisement, rssi in sorted(found, key=lambda item: item[2], reverse=True):
            line = f"{address} {advertisement.local_name or '<unknown-device>'} rssi={rssi}"
            if loaded and identity_matches(loaded.spec.protocol, address, advertisement.local_name):
                line += f" -> {loaded.name}"
            typer.echo(line)
    except GattsyncError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
