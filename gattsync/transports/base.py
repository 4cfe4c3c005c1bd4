"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class AdapterState(str, Enum):
    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


@dataclass(frozen=True)
class Advertisement:
    local_name: str = ""
    service_uuids: tuple[str, ...] = ()
    manufacturer_data: dict[int, bytes] = field(default_factory=dict)
    tx_power: int | None = None


class Characteristic(Protocol):
    @property
    def uuid(self) -> str: ...

    @property
    def properties(self) -> Sequence[str]:
        """Capability names such as "read", "write", "notify", "indicate"."""


class Service(Protocol):
    @property
    def uuid(self) -> str: ...


NotifyCallback = Callable[[Any, bytes], None]


class Peripheral(Protocol):
    @property
    def address(self) -> str: ...

    @property
    def name(self) -> str: ...

    async def set_mtu(self, size: int) -> int:
        """Negotiate the link MTU and return the size in effect."""

    async def discover_services(self) -> Sequence[Any]: ...

    async def discover_characteristics(self, service: Any) -> Sequence[Any]: ...

    async def discover_descriptors(self, characteristic: Any) -> Sequence[Any]: ...

    async def read_characteristic(self, characteristic: Any) -> bytes: ...

    async def write_characteristic(
        self,
        characteristic: Any,
        data: bytes,
        *,
        response: bool = True,
    ) -> None: ...

    async def set_notify_value(self, characteristic: Any, callback: NotifyCallback) -> None:
        """Subscribe to notifications or indications of a characteristic."""


StateChangedHandler = Callable[[AdapterState], Awaitable[None]]


@dataclass(frozen=True)
class SessionHandlers:
    discovered: Callable[[Any, Advertisement, int], Awaitable[None]]
    connected: Callable[[Any, Exception | None], Awaitable[None]]
    disconnected: Callable[[Any, Exception | None], Awaitable[None]]


class Session(Protocol):
    def handle(self, handlers: SessionHandlers) -> None:
        """Register the peripheral lifecycle handlers for the next cycle."""

    async def init(self, on_state_changed: StateChangedHandler) -> None:
        """Bring the adapter up and report its state through on_state_changed."""

    async def scan(self, service_uuids: Sequence[str] = ()) -> None: ...

    async def stop_scanning(self) -> None: ...

    async def connect(self, peripheral: Any) -> None:
        """Start connecting; the outcome is reported to the connected handler."""

    async def cancel_connection(self, peripheral: Any) -> None: ...

    async def close(self) -> None:
        """Tear down whatever the current cycle left behind."""
