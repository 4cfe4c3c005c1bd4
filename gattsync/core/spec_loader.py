"""Loading and validation of YAML device spec files."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from gattsync.core.device_match import normalize_uuid
from gattsync.core.errors import SpecLoadError, SpecValidationError
from gattsync.core.model import (
    AccessMode,
    ArithmeticOperation,
    DataConverterSpec,
    DeviceProperty,
    DeviceSpec,
    Operation,
    PropertyVisitor,
    ProtocolIdentity,
)

_HEX_RE = re.compile(r"^[0-9a-f]+$")
_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$")
_MAX_PAYLOAD_BYTES = 512
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


# Write table labels such as on/off/yes/no must stay strings.
UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise SpecValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedDeviceSpec:
    name: str
    spec: DeviceSpec
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("gattsync.schemas").joinpath("device.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SpecLoadError(f"Could not read device spec {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise SpecValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise SpecValidationError(f"Device spec {path} must contain a mapping at root")
    return loaded


def _normalize_hex(value: str, *, context: str) -> bytes:
    normalized = value.strip().lower().replace(" ", "")
    if len(normalized) == 0:
        raise SpecValidationError(f"{context} must not be empty")
    if len(normalized) % 2 != 0:
        raise SpecValidationError(f"{context} must have even-length hex")
    if not _HEX_RE.match(normalized):
        raise SpecValidationError(f"{context} must contain only [0-9a-f]")
    payload = bytes.fromhex(normalized)
    if len(payload) > _MAX_PAYLOAD_BYTES:
        raise SpecValidationError(
            f"{context} exceeds max payload size {_MAX_PAYLOAD_BYTES} bytes"
        )
    return payload


def _normalize_mac(value: str, *, context: str) -> str:
    normalized = value.strip().upper()
    if normalized and not _MAC_RE.match(normalized):
        raise SpecValidationError(f"{context} must look like AA:BB:CC:DD:EE:FF")
    return normalized


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise SpecValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    return normalize_uuid(normalized)


def _parse_number(value: Any, *, context: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise SpecValidationError(f"{context} must be a number") from exc


def _parse_access_mode(value: str) -> AccessMode | str:
    try:
        return AccessMode(value)
    except ValueError:
        return value


def _build_converter(doc: dict[str, Any], *, context: str) -> DataConverterSpec:
    operations = tuple(
        Operation(
            type=ArithmeticOperation(op["operation_type"]),
            value=_parse_number(op["operation_value"], context=f"{context}.order_of_operations[{index}]"),
        )
        for index, op in enumerate(doc.get("order_of_operations", []))
    )
    return DataConverterSpec(
        start_index=int(doc.get("start_index", 0)),
        end_index=int(doc.get("end_index", 0)),
        shift_left=doc.get("shift_left"),
        shift_right=doc.get("shift_right"),
        order_of_operations=operations,
    )


def _build_property(doc: dict[str, Any], *, context: str) -> DeviceProperty:
    visitor_doc = doc["visitor"]
    data_write = {
        str(label): _normalize_hex(payload, context=f"{context}.data_write.{label}")
        for label, payload in visitor_doc.get("data_write", {}).items()
    }
    visitor = PropertyVisitor(
        characteristic_uuid=_normalize_uuid(
            visitor_doc["characteristic_uuid"],
            context=f"{context}.characteristic_uuid",
        ),
        data_converter=_build_converter(
            visitor_doc.get("data_converter", {}),
            context=f"{context}.data_converter",
        ),
        data_write=data_write,
        default_value=visitor_doc.get("default_value", ""),
    )
    return DeviceProperty(
        name=doc["name"],
        access_mode=_parse_access_mode(doc["access_mode"]),
        visitor=visitor,
        description=doc.get("description", ""),
    )


def _spec_warnings(spec: DeviceSpec) -> list[str]:
    warnings: list[str] = []
    seen_uuids: dict[str, str] = {}
    for prop in spec.properties:
        if not isinstance(prop.access_mode, AccessMode):
            warnings.append(f"Property '{prop.name}' has unknown access mode '{prop.access_mode}'")
        elif prop.access_mode is AccessMode.READ_WRITE and prop.visitor.default_value not in prop.visitor.data_write:
            warnings.append(
                f"Property '{prop.name}' has no write payload for default value '{prop.visitor.default_value}'"
            )

        uuid = prop.visitor.characteristic_uuid
        if uuid in seen_uuids:
            warnings.append(
                f"Property '{prop.name}' shares characteristic {uuid} with '{seen_uuids[uuid]}' and is never used"
            )
        else:
            seen_uuids[uuid] = prop.name
    return warnings


def build_device_spec(doc: dict[str, Any], source: Path | str = "<memory>") -> LoadedDeviceSpec:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise SpecValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    names: set[str] = set()
    properties: list[DeviceProperty] = []
    for index, prop_doc in enumerate(doc["properties"]):
        prop = _build_property(prop_doc, context=f"{doc['name']}.properties[{index}]")
        if prop.name in names:
            raise SpecValidationError(f"Duplicate property name '{prop.name}' in {source}")
        names.add(prop.name)
        properties.append(prop)

    protocol_doc = doc["protocol"]
    spec = DeviceSpec(
        protocol=ProtocolIdentity(
            name=protocol_doc.get("name", ""),
            mac_address=_normalize_mac(
                protocol_doc.get("mac_address", ""),
                context=f"{doc['name']}.protocol.mac_address",
            ),
        ),
        properties=tuple(properties),
    )

    warnings = _spec_warnings(spec)
    for warning in warnings:
        LOGGER.warning(warning)
    return LoadedDeviceSpec(name=doc["name"], spec=spec, warnings=tuple(warnings))


def load_device_spec(path: Path | str) -> LoadedDeviceSpec:
    path = Path(path)
    return build_device_spec(_read_yaml(path), path)
