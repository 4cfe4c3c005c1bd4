"""BLE GATT session implementation on top of bleak."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Sequence
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from gattsync.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from gattsync.transports.base import (
    AdapterState,
    Advertisement,
    NotifyCallback,
    SessionHandlers,
    StateChangedHandler,
)

LOGGER = logging.getLogger(__name__)


def _advertisement(data: AdvertisementData) -> Advertisement:
    return Advertisement(
        local_name=data.local_name or "",
        service_uuids=tuple(data.service_uuids),
        manufacturer_data=dict(data.manufacturer_data),
        tx_power=data.tx_power,
    )


class BleakPeripheral:
    def __init__(self, device: BLEDevice) -> None:
        self.device = device
        self.client: BleakClient | None = None

    @property
    def address(self) -> str:
        return self.device.address

    @property
    def name(self) -> str:
        return self.device.name or ""

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.client.is_connected

    def _require_client(self) -> BleakClient:
        if self.client is None or not self.client.is_connected:
            raise TransportSendError(f"Peripheral {self.address} is not connected")
        return self.client

    async def set_mtu(self, size: int) -> int:
        client = self._require_client()
        # BleakClientBlueZDBus only exchanges the MTU when asked, through its private
        # _acquire_mtu(); the WinRT and CoreBluetooth backends negotiate on connect
        # and only expose the public mtu_size.
        backend = getattr(client, "_backend", None)
        acquire = getattr(backend, "_acquire_mtu", None)
        if acquire is not None:
            try:
                await acquire()
            except BleakError as exc:
                raise TransportSendError(f"MTU exchange failed for {self.address}: {exc}") from exc
        if client.mtu_size < size:
            LOGGER.debug("Peripheral %s settled on MTU %d (asked for %d)", self.address, client.mtu_size, size)
        return client.mtu_size

    async def discover_services(self) -> Sequence[Any]:
        client = self._require_client()
        return list(client.services)

    async def discover_characteristics(self, service: Any) -> Sequence[BleakGATTCharacteristic]:
        return list(service.characteristics)

    async def discover_descriptors(self, characteristic: BleakGATTCharacteristic) -> Sequence[Any]:
        return list(characteristic.descriptors)

    async def read_characteristic(self, characteristic: BleakGATTCharacteristic) -> bytes:
        client = self._require_client()
        try:
            return bytes(await client.read_gatt_char(characteristic))
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"Read of {characteristic.uuid} timed out") from exc
        except BleakError as exc:
            raise TransportSendError(f"Read of {characteristic.uuid} failed: {exc}") from exc

    async def write_characteristic(
        self,
        characteristic: BleakGATTCharacteristic,
        data: bytes,
        *,
        response: bool = True,
    ) -> None:
        client = self._require_client()
        try:
            await client.write_gatt_char(characteristic, data, response=response)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"Write of {characteristic.uuid} timed out") from exc
        except BleakError as exc:
            raise TransportSendError(f"Write of {characteristic.uuid} failed: {exc}") from exc

    async def set_notify_value(self, characteristic: BleakGATTCharacteristic, callback: NotifyCallback) -> None:
        client = self._require_client()

        def _notify_handler(sender: BleakGATTCharacteristic, data: bytearray) -> None:
            callback(sender, bytes(data))

        try:
            await client.start_notify(characteristic, _notify_handler)
        except BleakError as exc:
            raise TransportSendError(f"Subscribe to {characteristic.uuid} failed: {exc}") from exc

    async def disconnect(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.disconnect()
        except (BleakError, OSError) as exc:
            raise TransportConnectError(f"Disconnect from {self.address} failed: {exc}") from exc


class BleakSession:
    """Central-role session that reports scanner and client activity as lifecycle events."""

    def __init__(self, *, adapter: str | None = None, connect_timeout_s: float = 10.0) -> None:
        self.adapter = adapter
        self.connect_timeout_s = connect_timeout_s
        self._handlers: SessionHandlers | None = None
        self._scanner: BleakScanner | None = None
        self._peripherals: list[BleakPeripheral] = []
        self._tasks: set[asyncio.Task[None]] = set()

    def handle(self, handlers: SessionHandlers) -> None:
        self._handlers = handlers

    async def init(self, on_state_changed: StateChangedHandler) -> None:
        # bleak has no portable adapter power API; a failing scanner start reports it instead.
        await on_state_changed(AdapterState.POWERED_ON)

    async def scan(self, service_uuids: Sequence[str] = ()) -> None:
        if self._scanner is not None:
            return
        kwargs: dict[str, Any] = {}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        scanner = BleakScanner(
            detection_callback=self._on_detection,
            service_uuids=list(service_uuids) or None,
            **kwargs,
        )
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            raise TransportConnectError(f"BLE scan failed: {exc}") from exc
        self._scanner = scanner

    async def stop_scanning(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except (BleakError, OSError) as exc:
            raise TransportConnectError(f"Stopping BLE scan failed: {exc}") from exc

    async def connect(self, peripheral: BleakPeripheral) -> None:
        handlers = self._require_handlers()

        def _on_disconnect(_: BleakClient) -> None:
            self._spawn(handlers.disconnected(peripheral, None))

        client = BleakClient(
            peripheral.device,
            disconnected_callback=_on_disconnect,
            timeout=self.connect_timeout_s,
        )
        self._peripherals.append(peripheral)
        try:
            await client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as exc:
            error = TransportConnectError(f"BLE connect failed for {peripheral.address}: {exc}")
            self._spawn(handlers.connected(peripheral, error))
            return

        peripheral.client = client
        self._spawn(handlers.connected(peripheral, None))

    async def cancel_connection(self, peripheral: BleakPeripheral) -> None:
        await peripheral.disconnect()

    async def close(self) -> None:
        try:
            await self.stop_scanning()
        except TransportConnectError as exc:
            LOGGER.debug("Ignoring scanner stop failure during close: %s", exc)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        for peripheral in self._peripherals:
            if peripheral.is_connected:
                try:
                    await peripheral.disconnect()
                except TransportConnectError as exc:
                    LOGGER.debug("Ignoring disconnect failure during close: %s", exc)
        self._peripherals.clear()

    def _on_detection(self, device: BLEDevice, data: AdvertisementData) -> None:
        if self._handlers is None:
            return
        self._spawn(self._handlers.discovered(BleakPeripheral(device), _advertisement(data), data.rssi))

    def _require_handlers(self) -> SessionHandlers:
        if self._handlers is None:
            raise TransportConnectError("No session handlers registered")
        return self._handlers

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Session handler failed", exc_info=exc)


async def discover_peripherals(
    duration_s: float = 5.0,
    *,
    adapter: str | None = None,
) -> list[tuple[str, Advertisement, int]]:
    """Scan once and return (address, advertisement, rssi) for every peripheral seen."""
    kwargs: dict[str, Any] = {}
    if adapter:
        kwargs["adapter"] = adapter
    try:
        found = await BleakScanner.discover(timeout=duration_s, return_adv=True, **kwargs)
    except (BleakError, OSError) as exc:
        raise TransportConnectError(f"BLE scan failed: {exc}") from exc
    return [
        (device.address, _advertisement(data), data.rssi)
        for device, data in found.values()
    ]
