"""Access-mode specific exchanges for a single characteristic."""

from __future__ import annotations

import logging
from typing import Any

from gattsync.core.converter import DataConverter
from gattsync.core.errors import TransportError, WriteTableError
from gattsync.core.model import DeviceProperty
from gattsync.core.status import StatusStore
from gattsync.transports.base import Peripheral

LOGGER = logging.getLogger(__name__)

_NOTIFY_CAPABILITIES = frozenset({"notify", "indicate"})
_CHAR_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
}


def quote_bytes(data: bytes) -> str:
    """Render a payload as a double-quoted string.

    Valid printable UTF-8 is kept as is. Bytes that are not valid UTF-8 become
    ``\\xNN``, control characters use their short escape or ``\\xNN``, and other
    non-printable code points become ``\\uNNNN``/``\\UNNNNNNNN``.
    """
    parts: list[str] = []
    # surrogateescape maps each undecodable byte to U+DC80..U+DCFF.
    for char in data.decode("utf-8", errors="surrogateescape"):
        code = ord(char)
        if 0xDC80 <= code <= 0xDCFF:
            parts.append(f"\\x{code - 0xDC00:02x}")
        elif char in _CHAR_ESCAPES:
            parts.append(_CHAR_ESCAPES[char])
        elif char.isprintable():
            parts.append(char)
        elif code < 0x20 or code == 0x7F:
            parts.append(f"\\x{code:02x}")
        elif code < 0x10000:
            parts.append(f"\\u{code:04x}")
        else:
            parts.append(f"\\U{code:08x}")
    return '"' + "".join(parts) + '"'


def can_notify(characteristic: Any) -> bool:
    return any(p.lower() in _NOTIFY_CAPABILITIES for p in characteristic.properties)


class CharacteristicProcessor:
    def __init__(self, peripheral: Peripheral, status: StatusStore, converter: DataConverter) -> None:
        self.peripheral = peripheral
        self.status = status
        self.converter = converter

    async def read(self, characteristic: Any, prop: DeviceProperty) -> str:
        data = await self.peripheral.read_characteristic(characteristic)
        LOGGER.debug("Read %s from %s: %s", prop.name, characteristic.uuid, data.hex())

        value = f"{self.converter.convert(prop.visitor.data_converter, data):f}"
        LOGGER.info("Converted %s read value to %s", prop.name, value)
        self.status.upsert(prop.name, "", value)
        return value

    async def write(self, characteristic: Any, prop: DeviceProperty) -> None:
        visitor = prop.visitor
        if not visitor.data_write:
            raise WriteTableError(f"Property '{prop.name}' has an empty write table")

        payload = visitor.data_write.get(visitor.default_value)
        if payload is None:
            available = ", ".join(sorted(visitor.data_write))
            raise WriteTableError(
                f"Property '{prop.name}' has no write payload for default value "
                f"'{visitor.default_value}'. Available: {available}"
            )

        await self.peripheral.write_characteristic(characteristic, payload, response=True)
        LOGGER.debug("Wrote %s=%s to %s", prop.name, visitor.default_value, characteristic.uuid)

        # Only record the desired value once the device reports its effect.
        reported = await self.read(characteristic, prop)
        self.status.upsert(prop.name, visitor.default_value, reported)

    async def subscribe(self, characteristic: Any, prop: DeviceProperty) -> None:
        notifiable = can_notify(characteristic)
        try:
            await self.peripheral.discover_descriptors(characteristic)
        except TransportError:
            if notifiable:
                raise
            LOGGER.warning(
                "Descriptor discovery failed for %s (%s), characteristic does not notify",
                prop.name,
                characteristic.uuid,
            )
            return

        if not notifiable:
            LOGGER.debug("Characteristic %s does not notify or indicate, %s stays unset", characteristic.uuid, prop.name)
            return

        def _on_notify(_: Any, data: bytes) -> None:
            LOGGER.debug("Notified %s: %s", prop.name, data.hex(" "))
            self.status.upsert(prop.name, "", quote_bytes(data))

        await self.peripheral.set_notify_value(characteristic, _on_notify)
        LOGGER.info("Subscribed %s to %s", prop.name, characteristic.uuid)
