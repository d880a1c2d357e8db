"""Flag values.

A flag serves one of three value types. Each is a small frozen dataclass so
that equality is type-strict (``BoolValue(True) != NumberValue(1)``) and
evaluation code can dispatch on the concrete type.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Union


@dataclass(frozen=True)
class BoolValue:
    value: bool

    type_name = "bool"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "value": self.value}

    def __str__(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class StringValue:
    value: str

    type_name = "string"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "value": self.value}

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NumberValue:
    value: float

    type_name = "number"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "value": self.value}

    def __str__(self) -> str:
        return str(self.value)


Value = Union[BoolValue, StringValue, NumberValue]

VALUE_TYPES = (BoolValue, StringValue, NumberValue)

TRUE = BoolValue(True)
FALSE = BoolValue(False)


def as_value(raw: Any) -> Value:
    """Coerce a Python scalar (or an existing value) into a flag value."""
    if isinstance(raw, VALUE_TYPES):
        return raw
    # bool is a subclass of int, so it must be checked first
    if isinstance(raw, bool):
        return BoolValue(raw)
    if isinstance(raw, str):
        return StringValue(raw)
    if isinstance(raw, (int, float)):
        return NumberValue(raw)
    raise ValueError(f"Unsupported flag value: {raw!r}")


def value_from_dict(data: Any) -> Value:
    """Decode a value from its tagged form or from a bare JSON scalar."""
    if isinstance(data, dict):
        kind = data.get("type")
        raw = data.get("value")
        if kind == "bool" and isinstance(raw, bool):
            return BoolValue(raw)
        if kind == "string" and isinstance(raw, str):
            return StringValue(raw)
        if kind == "number" and isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return NumberValue(raw)
        raise ValueError(f"Malformed flag value: {data!r}")
    return as_value(data)


def to_python(value: Value) -> Any:
    """Unwrap a flag value for JSON responses and analytics payloads."""
    return value.value
