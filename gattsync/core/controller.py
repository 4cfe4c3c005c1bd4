"""Per-cycle BLE connection state machine.

A `SessionController` lives for exactly one resync cycle. The session drives
it through lifecycle events:

    IDLE -> SCANNING -> CONNECTING -> CONNECTED -> DISCONNECTED

Reaching DISCONNECTED sets the done event; that transition happens in a single
place so it fires once no matter how many teardown paths race to it.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from gattsync.core.converter import ByteConverter, DataConverter
from gattsync.core.device_match import find_property, identity_matches
from gattsync.core.errors import GattsyncError, TransportError
from gattsync.core.model import AccessMode, DeviceProperty, DeviceSpec
from gattsync.core.processor import CharacteristicProcessor
from gattsync.core.status import StatusStore
from gattsync.transports.base import AdapterState, Advertisement, Session, SessionHandlers

LOGGER = logging.getLogger(__name__)

DEFAULT_MTU = 500
DEFAULT_OBSERVATION_WINDOW_S = 5.0


class SessionState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionController:
    def __init__(
        self,
        spec: DeviceSpec,
        status: StatusStore,
        session: Session,
        *,
        converter: DataConverter | None = None,
        observation_window: float = DEFAULT_OBSERVATION_WINDOW_S,
        mtu: int = DEFAULT_MTU,
    ) -> None:
        self.spec = spec
        self.status = status
        self.session = session
        self.converter = converter or ByteConverter()
        self.observation_window = observation_window
        self.mtu = mtu
        self.state = SessionState.IDLE
        self.peripheral: Any = None
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def handlers(self) -> SessionHandlers:
        return SessionHandlers(
            discovered=self.on_peripheral_discovered,
            connected=self.on_peripheral_connected,
            disconnected=self.on_peripheral_disconnected,
        )

    async def wait_done(self) -> None:
        await self._done.wait()

    async def on_state_changed(self, state: AdapterState) -> None:
        LOGGER.info("Bluetooth adapter state: %s", state.value)
        if self.done:
            return

        if state is not AdapterState.POWERED_ON:
            if self.state is SessionState.SCANNING:
                self.state = SessionState.IDLE
            await self.session.stop_scanning()
            return

        if self.state is not SessionState.IDLE:
            return
        self.state = SessionState.SCANNING
        LOGGER.info("Scanning...")
        try:
            await self.session.scan()
        except TransportError as exc:
            LOGGER.error("Failed to start scanning: %s", exc)
            self._finish()

    async def on_peripheral_discovered(self, peripheral: Any, advertisement: Advertisement, rssi: int) -> None:
        # First match wins; anything reported after it is ignored.
        if self.state is not SessionState.SCANNING:
            return
        if not identity_matches(self.spec.protocol, peripheral.address, advertisement.local_name):
            return

        LOGGER.info(
            "Found %s (%s, rssi=%d), stop scanning",
            peripheral.address,
            advertisement.local_name or "<no-name>",
            rssi,
        )
        self.state = SessionState.CONNECTING
        self.peripheral = peripheral
        await self.session.stop_scanning()
        try:
            await self.session.connect(peripheral)
        except TransportError as exc:
            LOGGER.error("Failed to connect to %s: %s", peripheral.address, exc)
            self._finish()

    async def on_peripheral_connected(self, peripheral: Any, err: Exception | None) -> None:
        if self.done:
            # The cycle was already torn down and published; just drop the link.
            LOGGER.info("Ignoring late connection to %s", peripheral.address)
            if err is None:
                await self._release(peripheral)
            return
        if err is not None:
            LOGGER.error("Failed to connect to %s: %s", peripheral.address, err)
            self._finish()
            return

        LOGGER.info("Connected to %s", peripheral.name or peripheral.address)
        self.state = SessionState.CONNECTED
        self.peripheral = peripheral
        try:
            await self._process(peripheral)
        finally:
            await self._release(peripheral)

    async def on_peripheral_disconnected(self, peripheral: Any, err: Exception | None) -> None:
        if err is not None:
            LOGGER.warning("Device %s disconnected: %s", peripheral.address, err)
        else:
            LOGGER.info("Device %s disconnected", peripheral.address)
        self._finish()

    async def abort(self) -> None:
        """Tear the cycle down from outside, e.g. when it ran out of time."""
        if self.done:
            return
        LOGGER.warning("Aborting session in state %s", self.state.value)
        try:
            if self.state is SessionState.SCANNING:
                await self.session.stop_scanning()
            elif self.peripheral is not None:
                await self.session.cancel_connection(self.peripheral)
        except TransportError as exc:
            LOGGER.warning("Failed to tear down session: %s", exc)
        finally:
            self._finish()

    async def _process(self, peripheral: Any) -> None:
        processor = CharacteristicProcessor(peripheral, self.status, self.converter)

        try:
            mtu = await peripheral.set_mtu(self.mtu)
            LOGGER.debug("MTU in effect: %d", mtu)
        except TransportError as exc:
            LOGGER.warning("Failed to set MTU %d, keeping default: %s", self.mtu, exc)

        try:
            services = await peripheral.discover_services()
        except TransportError as exc:
            LOGGER.error("Failed to discover services: %s", exc)
            return

        for service in services:
            try:
                characteristics = await peripheral.discover_characteristics(service)
            except TransportError as exc:
                LOGGER.error("Failed to discover characteristics of %s: %s", service.uuid, exc)
                continue

            for characteristic in characteristics:
                prop = find_property(self.spec, characteristic.uuid)
                if prop is None:
                    continue
                if not await self._dispatch(processor, characteristic, prop):
                    return

        LOGGER.info("Waiting %.1f seconds for notifications, if any", self.observation_window)
        await asyncio.sleep(self.observation_window)

    async def _dispatch(self, processor: CharacteristicProcessor, characteristic: Any, prop: DeviceProperty) -> bool:
        """Run the exchange for prop; False means skip the rest of this connection."""
        mode = prop.access_mode
        if mode == AccessMode.READ_ONLY:
            try:
                await processor.read(characteristic, prop)
            except GattsyncError as exc:
                LOGGER.error("Failed to read characteristic %s for %s: %s", characteristic.uuid, prop.name, exc)
            return True

        if mode == AccessMode.READ_WRITE:
            try:
                await processor.write(characteristic, prop)
            except GattsyncError as exc:
                LOGGER.error("Failed to write characteristic %s for %s: %s", characteristic.uuid, prop.name, exc)
                return False
            return True

        if mode == AccessMode.NOTIFY_ONLY:
            try:
                await processor.subscribe(characteristic, prop)
            except GattsyncError as exc:
                LOGGER.error("Failed to subscribe characteristic %s for %s: %s", characteristic.uuid, prop.name, exc)
                return False
            return True

        LOGGER.warning("Access mode %r of property %s is not a valid option", mode, prop.name)
        return True

    async def _release(self, peripheral: Any) -> None:
        try:
            await self.session.cancel_connection(peripheral)
        except TransportError as exc:
            LOGGER.warning("Failed to cancel connection to %s: %s", peripheral.address, exc)
            self._finish()

    def _finish(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        self._done.set()
