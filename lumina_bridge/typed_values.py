"""Conversion between Firestore typed values and plain JSON.

Firestore's REST API wraps every value in a single-key object naming its type,
e.g. ``{"integerValue": "128"}`` or ``{"mapValue": {"fields": {...}}}``. The
device only understands plain JSON, so payloads are decoded into a
:class:`TypedValue` tree and projected back to native Python values with
:func:`to_plain_json`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

LOGGER = logging.getLogger(__name__)


class UnknownValueTagError(ValueError):
    """Raised when a wire node carries no recognised value tag."""

    def __init__(self, node: Any) -> None:
        tags = sorted(node) if isinstance(node, Mapping) else []
        super().__init__(f"Unknown value tag(s): {tags or type(node).__name__}")
        self.tags = tags


class ValueKind(str, Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    ARRAY = "array"
    MAP = "map"


@dataclass(slots=True, frozen=True)
class TypedValue:
    """A decoded value together with its kind.

    ``ARRAY`` values hold a tuple of :class:`TypedValue` and ``MAP`` values
    hold an insertion-ordered ``dict`` of ``str`` to :class:`TypedValue`.
    """

    kind: ValueKind
    value: Any = None

    @classmethod
    def null(cls) -> "TypedValue":
        return cls(ValueKind.NULL)

    @classmethod
    def of_map(cls, fields: Optional[Mapping[str, "TypedValue"]] = None) -> "TypedValue":
        return cls(ValueKind.MAP, dict(fields or {}))

    @classmethod
    def of_array(cls, values: Optional[list["TypedValue"]] = None) -> "TypedValue":
        return cls(ValueKind.ARRAY, tuple(values or ()))

    @property
    def is_map(self) -> bool:
        return self.kind is ValueKind.MAP

    def get(self, key: str) -> Optional["TypedValue"]:
        """Look up a map field; ``None`` for non-maps or missing keys."""
        if self.kind is not ValueKind.MAP:
            return None
        return self.value.get(key)

    def as_str(self, default: str = "") -> str:
        if self.kind is ValueKind.STRING:
            return self.value
        return default


EMPTY_MAP = TypedValue.of_map()


def decode(node: Any) -> TypedValue:
    """Decode one wire node.

    Raises:
        UnknownValueTagError: If ``node`` is not an object or carries none of
            the recognised tags.
    """

    if not isinstance(node, Mapping):
        raise UnknownValueTagError(node)

    if "nullValue" in node:
        return TypedValue.null()
    if "booleanValue" in node:
        return TypedValue(ValueKind.BOOL, bool(node["booleanValue"]))
    if "integerValue" in node:
        # int64 travels as a decimal string on the wire
        return TypedValue(ValueKind.INT, int(node["integerValue"]))
    if "doubleValue" in node:
        return TypedValue(ValueKind.FLOAT, float(node["doubleValue"]))
    if "stringValue" in node:
        return TypedValue(ValueKind.STRING, str(node["stringValue"]))
    if "timestampValue" in node:
        return TypedValue(ValueKind.STRING, str(node["timestampValue"]))
    if "arrayValue" in node:
        values = _container(node, "arrayValue").get("values") or []
        if not isinstance(values, list):
            raise UnknownValueTagError(node)
        return TypedValue.of_array(_decode_elements(values))
    if "mapValue" in node:
        return decode_fields(_container(node, "mapValue").get("fields") or {})

    raise UnknownValueTagError(node)


def decode_fields(fields: Mapping[str, Any]) -> TypedValue:
    """Decode a document ``fields`` object into a MAP value.

    Fields whose value carries an unknown tag are omitted.
    """

    if not isinstance(fields, Mapping):
        raise UnknownValueTagError(fields)

    decoded: dict[str, TypedValue] = {}
    for key, node in fields.items():
        try:
            decoded[key] = decode(node)
        except (ValueError, TypeError) as exc:
            LOGGER.debug("Skipping field %r: %s", key, exc)
    return TypedValue.of_map(decoded)


def _container(node: Mapping[str, Any], tag: str) -> Mapping[str, Any]:
    body = node[tag] or {}
    if not isinstance(body, Mapping):
        raise UnknownValueTagError(node)
    return body


def _decode_elements(values: list[Any]) -> list[TypedValue]:
    decoded: list[TypedValue] = []
    for index, node in enumerate(values):
        try:
            decoded.append(decode(node))
        except (ValueError, TypeError) as exc:
            LOGGER.debug("Skipping array element %d: %s", index, exc)
    return decoded


def to_plain_json(value: TypedValue) -> Any:
    """Erase type tags, returning native Python JSON values."""

    if value.kind is ValueKind.ARRAY:
        return [to_plain_json(item) for item in value.value]
    if value.kind is ValueKind.MAP:
        return {key: to_plain_json(item) for key, item in value.value.items()}
    return value.value


def from_plain(value: Any) -> TypedValue:
    """Lift a plain JSON value into a :class:`TypedValue` tree."""

    if value is None:
        return TypedValue.null()
    # bool is a subclass of int, test it first
    if isinstance(value, bool):
        return TypedValue(ValueKind.BOOL, value)
    if isinstance(value, int):
        return TypedValue(ValueKind.INT, value)
    if isinstance(value, float):
        return TypedValue(ValueKind.FLOAT, value)
    if isinstance(value, str):
        return TypedValue(ValueKind.STRING, value)
    if isinstance(value, (list, tuple)):
        return TypedValue.of_array([from_plain(item) for item in value])
    if isinstance(value, Mapping):
        return TypedValue.of_map(
            {str(key): from_plain(item) for key, item in value.items()}
        )
    raise TypeError(f"Cannot represent {type(value).__name__} as a typed value")


def encode(value: Any) -> dict[str, Any]:
    """Encode a plain JSON value (or a :class:`TypedValue`) as a wire node."""

    if isinstance(value, TypedValue):
        value = to_plain_json(value)

    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        if not value:
            return {"arrayValue": {}}
        return {"arrayValue": {"values": [encode(item) for item in value]}}
    if isinstance(value, Mapping):
        if not value:
            return {"mapValue": {}}
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot encode {type(value).__name__} as a typed value")


def encode_fields(values: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key): encode(item) for key, item in values.items()}
