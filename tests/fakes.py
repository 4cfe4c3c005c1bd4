"""In-memory stand-ins for the BLE session used across the test suite."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from gattsync.core.model import (
    AccessMode,
    DataConverterSpec,
    DeviceProperty,
    PropertyVisitor,
)
from gattsync.transports.base import AdapterState, Advertisement, SessionHandlers

BATTERY_UUID = "00002a19-0000-1000-8000-00805f9b34fb"
SWITCH_UUID = "0000ff01-0000-1000-8000-00805f9b34fb"
BUTTON_UUID = "0000ff02-0000-1000-8000-00805f9b34fb"


@dataclass
class FakeCharacteristic:
    uuid: str
    properties: tuple[str, ...] = ("read",)


@dataclass
class FakeService:
    uuid: str
    characteristics: list[FakeCharacteristic] = field(default_factory=list)


class FakePeripheral:
    def __init__(
        self,
        address: str = "AA:BB:CC:DD:EE:FF",
        name: str = "Thermo",
        services: list[FakeService] | None = None,
        reads: dict[str, list[bytes]] | None = None,
        errors: dict[tuple[str, str], Exception] | None = None,
    ) -> None:
        self.address = address
        self.name = name
        self.services = services or []
        self.reads = {uuid: list(values) for uuid, values in (reads or {}).items()}
        self.errors = errors or {}
        self.calls: list[tuple[str, str]] = []
        self.writes: list[tuple[str, bytes, bool]] = []
        self.subscriptions: dict[str, Any] = {}

    def _record(self, op: str, key: str = "") -> None:
        self.calls.append((op, key))
        error = self.errors.get((op, key))
        if error is not None:
            raise error

    async def set_mtu(self, size: int) -> int:
        self._record("mtu")
        return size

    async def discover_services(self) -> list[FakeService]:
        self._record("services")
        return self.services

    async def discover_characteristics(self, service: FakeService) -> list[FakeCharacteristic]:
        self._record("characteristics", service.uuid)
        return service.characteristics

    async def discover_descriptors(self, characteristic: FakeCharacteristic) -> list[Any]:
        self._record("descriptors", characteristic.uuid)
        return []

    async def read_characteristic(self, characteristic: FakeCharacteristic) -> bytes:
        self._record("read", characteristic.uuid)
        values = self.reads[characteristic.uuid]
        return values.pop(0) if len(values) > 1 else values[0]

    async def write_characteristic(
        self,
        characteristic: FakeCharacteristic,
        data: bytes,
        *,
        response: bool = True,
    ) -> None:
        self._record("write", characteristic.uuid)
        self.writes.append((characteristic.uuid, data, response))

    async def set_notify_value(self, characteristic: FakeCharacteristic, callback: Any) -> None:
        self._record("notify", characteristic.uuid)
        self.subscriptions[characteristic.uuid] = callback

    def notify(self, uuid: str, data: bytes) -> None:
        characteristic = next(
            c for s in self.services for c in s.characteristics if c.uuid == uuid
        )
        self.subscriptions[uuid](characteristic, data)


class FakeSession:
    """Delivers lifecycle events inline, in the order a real adapter would."""

    def __init__(
        self,
        advertisements: list[tuple[FakePeripheral, Advertisement, int]] | None = None,
        *,
        state: AdapterState = AdapterState.POWERED_ON,
        connect_error: Exception | None = None,
        disconnect_on_cancel: bool = True,
    ) -> None:
        self.advertisements = advertisements or []
        self.state = state
        self.connect_error = connect_error
        self.disconnect_on_cancel = disconnect_on_cancel
        self.handlers: SessionHandlers | None = None
        self.calls: list[str] = []
        self.cycles = 0

    def handle(self, handlers: SessionHandlers) -> None:
        self.handlers = handlers

    async def init(self, on_state_changed: Any) -> None:
        self.cycles += 1
        self.calls.append("init")
        await on_state_changed(self.state)

    async def scan(self, service_uuids: Any = ()) -> None:
        self.calls.append("scan")
        for peripheral, advertisement, rssi in self.advertisements:
            await self.handlers.discovered(peripheral, advertisement, rssi)

    async def stop_scanning(self) -> None:
        self.calls.append("stop_scanning")

    async def connect(self, peripheral: FakePeripheral) -> None:
        self.calls.append(f"connect:{peripheral.address}")
        await self.handlers.connected(peripheral, self.connect_error)

    async def cancel_connection(self, peripheral: FakePeripheral) -> None:
        self.calls.append(f"cancel:{peripheral.address}")
        if self.disconnect_on_cancel:
            await self.handlers.disconnected(peripheral, None)

    async def close(self) -> None:
        self.calls.append("close")


def make_property(
    name: str,
    uuid: str,
    mode: AccessMode | str = AccessMode.READ_ONLY,
    *,
    data_write: dict[str, bytes] | None = None,
    default_value: str = "",
    converter: DataConverterSpec | None = None,
) -> DeviceProperty:
    return DeviceProperty(
        name=name,
        access_mode=mode,
        visitor=PropertyVisitor(
            characteristic_uuid=uuid,
            data_converter=converter or DataConverterSpec(),
            data_write=data_write or {},
            default_value=default_value,
        ),
    )
