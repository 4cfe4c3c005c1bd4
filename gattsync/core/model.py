"""Core data models used across loader, controller, supervisor, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AccessMode(str, Enum):
    READ_ONLY = "ReadOnly"
    READ_WRITE = "ReadWrite"
    NOTIFY_ONLY = "NotifyOnly"


class ArithmeticOperation(str, Enum):
    ADD = "Add"
    SUBTRACT = "Subtract"
    MULTIPLY = "Multiply"
    DIVIDE = "Divide"


@dataclass(frozen=True)
class ProtocolIdentity:
    name: str = ""
    mac_address: str = ""


@dataclass(frozen=True)
class Operation:
    type: ArithmeticOperation
    value: float


@dataclass(frozen=True)
class DataConverterSpec:
    start_index: int = 0
    end_index: int = 0
    shift_left: int | None = None
    shift_right: int | None = None
    order_of_operations: tuple[Operation, ...] = ()


@dataclass(frozen=True)
class PropertyVisitor:
    characteristic_uuid: str
    data_converter: DataConverterSpec = DataConverterSpec()
    data_write: dict[str, bytes] = field(default_factory=dict)
    default_value: str = ""


@dataclass(frozen=True)
class DeviceProperty:
    name: str
    # Unrecognized modes are kept as raw strings so they can be reported and skipped.
    access_mode: AccessMode | str
    visitor: PropertyVisitor
    description: str = ""


@dataclass(frozen=True)
class DeviceSpec:
    protocol: ProtocolIdentity
    properties: tuple[DeviceProperty, ...] = ()


@dataclass(frozen=True)
class StatusEntry:
    name: str
    desired: str
    reported: str
    updated_at: datetime


StatusSnapshot = tuple[StatusEntry, ...]


@dataclass(frozen=True)
class Parameters:
    """Runtime knobs for the resync loop.

    `sync_interval` and `timeout` are in seconds. A `timeout` of None waits for
    the peripheral to disconnect without bound.
    """

    sync_interval: float = 30.0
    timeout: float | None = 60.0
    observation_window: float = 5.0
    mtu: int = 500
    carry_status: bool = False
