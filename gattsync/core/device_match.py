"""Peripheral filtering and characteristic-to-property matching."""

from __future__ import annotations

import re

from gattsync.core.model import DeviceProperty, DeviceSpec, ProtocolIdentity

_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"
_SHORT_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$")


def normalize_uuid(value: str) -> str:
    """Return the lower-case 128-bit form of a 16, 32 or 128-bit UUID string."""
    normalized = value.strip().lower()
    if _SHORT_UUID_RE.match(normalized):
        return normalized.rjust(8, "0") + _BASE_UUID_SUFFIX
    return normalized


def identity_matches(identity: ProtocolIdentity, address: str, local_name: str) -> bool:
    if identity.name and local_name != identity.name:
        return False
    if identity.mac_address and address.upper() != identity.mac_address.upper():
        return False
    return True


def find_property(spec: DeviceSpec, characteristic_uuid: str) -> DeviceProperty | None:
    wanted = normalize_uuid(characteristic_uuid)
    for prop in spec.properties:
        if normalize_uuid(prop.visitor.characteristic_uuid) == wanted:
            return prop
    return None
