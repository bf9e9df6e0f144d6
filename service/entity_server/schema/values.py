"""
Typed attribute values.

A TypedValue is a tagged union over AttributeKind. Equality is structural:
two values are equal iff both kind and value are equal.

Wire form:
    {"kind": "string", "value": "pod-a"}
    {"kind": "bytes", "value": "<base64>"}
    {"kind": "timestamp", "value": 1700000000000000000}   # nanoseconds

Invariants:
    - int64 and timestamp values fit in a signed 64-bit integer
    - double values are always stored as finite floats; -0.0 is stored as 0.0
    - bool is never accepted where a number is expected (and vice versa)
"""

from __future__ import annotations

import base64
import binascii
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ..errors import InvalidArgumentError
from .types import AttributeKind

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TypedValue:
    """An attribute value tagged with its kind.

    Attributes:
        kind: Value kind
        value: Python value (str, int, float, bool or bytes)

    Example:
        >>> TypedValue.string("pod-a") == TypedValue(AttributeKind.STRING, "pod-a")
        True
        >>> TypedValue.of(3)
        TypedValue(kind=<AttributeKind.INT64: 'int64'>, value=3)
    """

    kind: AttributeKind
    value: Any

    def __post_init__(self) -> None:
        kind, value = self.kind, self.value
        if kind == AttributeKind.STRING:
            ok = isinstance(value, str)
        elif kind in (AttributeKind.INT64, AttributeKind.TIMESTAMP):
            ok = (
                isinstance(value, int)
                and not isinstance(value, bool)
                and INT64_MIN <= value <= INT64_MAX
            )
        elif kind == AttributeKind.DOUBLE:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
            if ok:
                try:
                    value = float(value)
                except OverflowError:
                    ok = False
            if ok:
                ok = math.isfinite(value)
                # -0.0 == 0.0, so both must share one canonical encoding
                object.__setattr__(self, "value", value + 0.0)
        elif kind == AttributeKind.BOOL:
            ok = isinstance(value, bool)
        elif kind == AttributeKind.BYTES:
            ok = isinstance(value, (bytes, bytearray))
            if ok and isinstance(value, bytearray):
                object.__setattr__(self, "value", bytes(value))
        else:
            ok = False
        if not ok:
            raise InvalidArgumentError(
                f"Value {value!r} is not a valid {getattr(kind, 'value', kind)}"
            )

    @classmethod
    def string(cls, value: str) -> TypedValue:
        return cls(AttributeKind.STRING, value)

    @classmethod
    def int64(cls, value: int) -> TypedValue:
        return cls(AttributeKind.INT64, value)

    @classmethod
    def double(cls, value: float) -> TypedValue:
        return cls(AttributeKind.DOUBLE, value)

    @classmethod
    def boolean(cls, value: bool) -> TypedValue:
        return cls(AttributeKind.BOOL, value)

    @classmethod
    def binary(cls, value: bytes) -> TypedValue:
        return cls(AttributeKind.BYTES, value)

    @classmethod
    def timestamp(cls, value: int | datetime) -> TypedValue:
        """Timestamp from nanoseconds since the epoch or an aware datetime."""
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise InvalidArgumentError("Timestamp datetimes must be timezone-aware")
            value = (value - _EPOCH) // timedelta(microseconds=1) * 1000
        return cls(AttributeKind.TIMESTAMP, value)

    @classmethod
    def of(cls, value: Any) -> TypedValue:
        """Infer the kind from a plain Python value."""
        if isinstance(value, TypedValue):
            return value
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, int):
            return cls.int64(value)
        if isinstance(value, float):
            return cls.double(value)
        if isinstance(value, str):
            return cls.string(value)
        if isinstance(value, (bytes, bytearray)):
            return cls.binary(bytes(value))
        if isinstance(value, datetime):
            return cls.timestamp(value)
        raise InvalidArgumentError(f"Cannot infer attribute kind for {type(value).__name__}")

    def to_dict(self) -> dict[str, Any]:
        value = self.value
        if self.kind == AttributeKind.BYTES:
            value = base64.b64encode(value).decode("ascii")
        return {"kind": self.kind.value, "value": value}

    @classmethod
    def from_dict(cls, data: Any) -> TypedValue:
        """Parse the wire form.

        Raises:
            InvalidArgumentError: If the kind is unknown or the value does not fit it
        """
        if not isinstance(data, dict) or "kind" not in data or "value" not in data:
            raise InvalidArgumentError(f"Typed value must have 'kind' and 'value': {data!r}")
        kind = AttributeKind.from_str(data["kind"])
        value = data["value"]
        if kind == AttributeKind.BYTES:
            if not isinstance(value, str):
                raise InvalidArgumentError("bytes values must be base64 text")
            try:
                value = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                raise InvalidArgumentError("bytes value is not valid base64")
        return cls(kind, value)


def attributes_to_dict(attributes: dict[str, TypedValue]) -> dict[str, dict[str, Any]]:
    return {name: value.to_dict() for name, value in attributes.items()}


def attributes_from_dict(data: Any) -> dict[str, TypedValue]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidArgumentError("attributes must be an object")
    if "" in data:
        raise InvalidArgumentError("Attribute names cannot be empty")
    return {str(name): TypedValue.from_dict(value) for name, value in data.items()}
