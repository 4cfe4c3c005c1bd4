"""Conversion of raw characteristic payloads into numeric values."""

from __future__ import annotations

from typing import Protocol

from gattsync.core.errors import ConversionError
from gattsync.core.model import ArithmeticOperation, DataConverterSpec


class DataConverter(Protocol):
    def convert(self, spec: DataConverterSpec, data: bytes) -> float:
        """Turn raw characteristic bytes into a number according to spec."""


class ByteConverter:
    """Interpret a byte range as an unsigned integer, then shift and scale it.

    Bytes are taken from `start_index` towards `end_index` with the first byte
    taken being the most significant, so `start_index > end_index` reads a
    little-endian field.
    """

    def convert(self, spec: DataConverterSpec, data: bytes) -> float:
        low, high = sorted((spec.start_index, spec.end_index))
        if low < 0 or high >= len(data):
            raise ConversionError(
                f"Byte range {spec.start_index}..{spec.end_index} is outside payload of {len(data)} bytes"
            )

        selected = data[low : high + 1]
        if spec.start_index > spec.end_index:
            selected = selected[::-1]
        raw = int.from_bytes(selected, "big")

        if spec.shift_left:
            raw <<= spec.shift_left
        elif spec.shift_right:
            raw >>= spec.shift_right

        value = float(raw)
        for operation in spec.order_of_operations:
            value = _apply(operation.type, value, operation.value)
        return value


def _apply(op: ArithmeticOperation, value: float, operand: float) -> float:
    if op is ArithmeticOperation.ADD:
        return value + operand
    if op is ArithmeticOperation.SUBTRACT:
        return value - operand
    if op is ArithmeticOperation.MULTIPLY:
        return value * operand
    if op is ArithmeticOperation.DIVIDE:
        if operand == 0:
            raise ConversionError("Division by zero in converter operations")
        return value / operand
    raise ConversionError(f"Unsupported arithmetic operation '{op}'")
