"""Port data kinds and explicit value conversions.

Config and port values are plain Python objects. The only schema applied to
them is the kind declared on a port, checked at runtime by ``matches_kind``.
"""

import json
import math
from collections.abc import Mapping
from enum import StrEnum
from typing import Any


class DataKind(StrEnum):
    """Kinds a port can declare."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    IMAGE = "image"  # opaque handle: a mapping carrying "image_data"
    ANY = "any"


def kind_of(value: Any) -> str:
    """Describe the runtime kind of a value, for error messages."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return DataKind.BOOLEAN
    if isinstance(value, int | float):
        return DataKind.NUMBER
    if isinstance(value, str):
        return DataKind.STRING
    if isinstance(value, list | tuple):
        return DataKind.ARRAY
    if isinstance(value, Mapping):
        if "image_data" in value:
            return DataKind.IMAGE
        return DataKind.OBJECT
    return type(value).__name__


def matches_kind(value: Any, kind: DataKind | str) -> bool:
    """Check that ``value`` is compatible with a declared port kind."""
    kind = DataKind(kind)
    if kind == DataKind.ANY:
        return True
    if kind == DataKind.STRING:
        return isinstance(value, str)
    if kind == DataKind.NUMBER:
        # bool is an int subclass but never a number port value
        return isinstance(value, int | float) and not isinstance(value, bool)
    if kind == DataKind.BOOLEAN:
        return isinstance(value, bool)
    if kind == DataKind.ARRAY:
        return isinstance(value, list | tuple)
    if kind == DataKind.OBJECT:
        return isinstance(value, Mapping)
    if kind == DataKind.IMAGE:
        return isinstance(value, Mapping) and "image_data" in value
    return True


_FALSY_STRINGS = {"", "false", "0", "no", "off"}


def to_number(value: Any, strict: bool = False) -> float | int:
    """Convert to a number.

    Non-numeric values become 0 unless ``strict`` is set, in which case a
    ValueError is raised.
    """
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, int | float):
        return value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            if strict:
                raise ValueError(f"Cannot convert {value!r} to a number") from None
            return 0
        if math.isnan(number):
            return 0
        return int(number) if number.is_integer() and "." not in value else number
    if strict:
        raise ValueError(f"Cannot convert {kind_of(value)} to a number")
    return 0


def to_string(value: Any) -> str:
    """Convert to text. Containers are serialized as JSON."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


def to_boolean(value: Any) -> bool:
    """Convert to a boolean, treating common "off" strings as False."""
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)
