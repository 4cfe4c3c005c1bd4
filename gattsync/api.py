"""Stable public API for embedding gattsync in other services.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from gattsync.core.converter import ByteConverter, DataConverter
from gattsync.core.device import Device, StatusHandler
from gattsync.core.errors import (
    CharacteristicError,
    ConversionError,
    GattsyncError,
    SpecLoadError,
    SpecValidationError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    WriteTableError,
)
from gattsync.core.model import (
    AccessMode,
    ArithmeticOperation,
    DataConverterSpec,
    DeviceProperty,
    DeviceSpec,
    Operation,
    Parameters,
    PropertyVisitor,
    ProtocolIdentity,
    StatusEntry,
    StatusSnapshot,
)
from gattsync.core.spec_loader import LoadedDeviceSpec, build_device_spec, load_device_spec
from gattsync.core.status import snapshot_to_dicts
from gattsync.transports.base import Advertisement, AdapterState, Session, SessionHandlers
from gattsync.transports.ble_gatt import BleakSession

__all__ = [
    "GattsyncError",
    "SpecLoadError",
    "SpecValidationError",
    "ConversionError",
    "CharacteristicError",
    "WriteTableError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "AccessMode",
    "ArithmeticOperation",
    "DataConverterSpec",
    "DeviceProperty",
    "DeviceSpec",
    "Operation",
    "Parameters",
    "PropertyVisitor",
    "ProtocolIdentity",
    "StatusEntry",
    "StatusSnapshot",
    "LoadedDeviceSpec",
    "build_device_spec",
    "load_device_spec",
    "snapshot_to_dicts",
    "ByteConverter",
    "DataConverter",
    "Device",
    "StatusHandler",
    "Advertisement",
    "AdapterState",
    "Session",
    "SessionHandlers",
    "BleakSession",
    "new_device",
]


def new_device(
    name: str,
    handler: StatusHandler,
    params: Parameters | None = None,
    *,
    session: Session | None = None,
    converter: DataConverter | None = None,
    adapter: str | None = None,
) -> Device:
    """Build a `Device`, defaulting to a bleak-backed session on `adapter`.

    Call `configure()` on the result from inside a running event loop to start
    syncing, and `shutdown()` to stop after the current cycle.
    """
    return Device(
        name,
        handler,
        params or Parameters(),
        session or BleakSession(adapter=adapter),
        converter=converter,
    )
