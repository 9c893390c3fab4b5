"""
Flexible value codec for plan feature values.

A feature value may be an int, float, bool, str, list, dict or None, or a
mapping from locale code to any of those. Values are stored as a
self-describing wire structure:

    single value:       {"type": "integer", "value": 100}
    translatable value: {"en": {"type": "integer", "value": 1000},
                         "ar": {"type": "integer", "value": 2000}}

``decode`` also accepts legacy plain strings written before values were
tagged and coerces them to the most likely native type.
"""

import json
import math
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from subsphere.exceptions import InvalidFeatureValueError

LOCALE_PATTERN = re.compile(r"^[a-z]{2}(-[A-Z]{2})?$")

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off"})
_NULL_STRINGS = frozenset({"null", "nil", ""})
_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_FLOAT_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

WireValue = dict[str, Any]


class ValueKind(str, Enum):
    """Type tag carried by every stored value."""

    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"

    @classmethod
    def of(cls, value: Any) -> "ValueKind":
        """Tag for a native value. Raises if the value cannot be stored."""
        # bool is a subclass of int, so it has to be checked first
        if value is None:
            return cls.NULL
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, int):
            return cls.INTEGER
        if isinstance(value, float):
            if not math.isfinite(value):
                raise InvalidFeatureValueError(
                    "Non-finite floats cannot be stored", value_type="float"
                )
            return cls.FLOAT
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, (list, tuple)):
            return cls.ARRAY
        if isinstance(value, dict):
            return cls.ARRAY if _has_numeric_keys(value) else cls.OBJECT
        raise InvalidFeatureValueError(
            f"Unsupported feature value type: {type(value).__name__}",
            value_type=type(value).__name__,
        )


class TaggedValue(BaseModel):
    """A single (non-translatable) value with its type tag."""

    model_config = ConfigDict(extra="forbid")

    type: ValueKind
    value: Any = None

    def to_native(self) -> Any:
        if self.type is ValueKind.NULL:
            return None
        if self.type is ValueKind.BOOLEAN:
            return bool(self.value)
        if self.type is ValueKind.INTEGER:
            return int(self.value)
        if self.type is ValueKind.FLOAT:
            return float(self.value)
        if self.type is ValueKind.STRING:
            return str(self.value)
        if self.type is ValueKind.ARRAY:
            return list(self.value or [])
        return dict(self.value or {})


_KIND_TAGS = frozenset(kind.value for kind in ValueKind)


def is_locale_code(key: Any) -> bool:
    """True for keys like ``en`` or ``pt-BR``."""
    return isinstance(key, str) and LOCALE_PATTERN.match(key) is not None


def _has_numeric_keys(mapping: dict[Any, Any]) -> bool:
    if not mapping:
        return False
    return all(
        (isinstance(key, int) and not isinstance(key, bool))
        or (isinstance(key, str) and key.isdigit())
        for key in mapping
    )


def _is_storable(value: Any) -> bool:
    try:
        ValueKind.of(value)
    except InvalidFeatureValueError:
        return False
    return True


def is_translatable(value: Any) -> bool:
    """
    True when ``value`` is a non-empty mapping of locale codes to storable values.

    Empty mappings, numerically keyed mappings and mappings mixing locale
    codes with other keys are plain values.
    """
    if not isinstance(value, dict) or not value:
        return False
    if _has_numeric_keys(value):
        return False
    return all(is_locale_code(key) and _is_storable(item) for key, item in value.items())


def _to_payload(kind: ValueKind, value: Any) -> Any:
    if kind is ValueKind.ARRAY:
        if isinstance(value, dict):
            return [value[key] for key in sorted(value, key=int)]
        return list(value)
    return value


def encode_single(value: Any) -> WireValue:
    """Tag one native value."""
    kind = ValueKind.of(value)
    payload = _to_payload(kind, value)
    if kind in (ValueKind.ARRAY, ValueKind.OBJECT):
        try:
            json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise InvalidFeatureValueError(
                f"Feature value is not JSON serialisable: {e}", value_type=kind.value
            ) from e
    return {"type": kind.value, "value": payload}


def encode(value: Any) -> WireValue:
    """
    Encode a native value into its wire structure.

    Args:
        value: Native feature value or a locale -> value mapping

    Returns:
        Tagged single value, or a mapping of locale -> tagged single value

    Raises:
        InvalidFeatureValueError: If the value (or a locale entry) cannot be stored
    """
    if is_translatable(value):
        return {locale: encode_single(item) for locale, item in value.items()}
    return encode_single(value)


def to_json(value: Any) -> str:
    """Encode and serialise to a JSON string."""
    return json.dumps(encode(value))


def is_single_wire(wire: Any) -> bool:
    if not isinstance(wire, dict) or set(wire) != {"type", "value"}:
        return False
    return isinstance(wire["type"], str) and wire["type"] in _KIND_TAGS


def is_translatable_wire(wire: Any) -> bool:
    if not isinstance(wire, dict) or not wire:
        return False
    return all(is_locale_code(key) and is_single_wire(item) for key, item in wire.items())


def decode_single(wire: WireValue) -> Any:
    try:
        return TaggedValue.model_validate(wire).to_native()
    except (TypeError, ValueError) as e:
        raise InvalidFeatureValueError(
            f"Malformed {wire.get('type')} value: {wire.get('value')!r}",
            value_type=wire.get("type"),
        ) from e


def coerce_legacy(raw: str) -> Any:
    """
    Best-effort conversion of an untagged legacy string.

    ``"null"``/``"nil"``/``""`` become None, boolean words become bools,
    numeric strings become int or float, JSON-looking strings are parsed
    and anything else is returned unchanged.
    """
    text = raw.strip()
    lowered = text.lower()

    if lowered in _NULL_STRINGS:
        return None
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    if _INT_PATTERN.match(text):
        return int(text)
    if _FLOAT_PATTERN.match(text):
        number = float(text)
        if math.isfinite(number):
            return number
    if text.startswith(("{", "[")):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return raw
    return raw


def _parse_wire(wire: Any) -> tuple[bool, Any]:
    """Return ``(recognised, wire)`` after unwrapping a JSON string if needed."""
    if isinstance(wire, str):
        try:
            parsed = json.loads(wire)
        except json.JSONDecodeError:
            return False, wire
        if is_single_wire(parsed) or is_translatable_wire(parsed):
            return True, parsed
        return False, wire
    return is_single_wire(wire) or is_translatable_wire(wire), wire


def decode(wire: Any) -> Any:
    """
    Decode a wire structure back to its native value.

    Translatable values decode to a ``{locale: value}`` mapping. Input that
    is not recognised wire format goes through legacy coercion when it is a
    string and is returned as-is otherwise.
    """
    if wire is None:
        return None

    recognised, parsed = _parse_wire(wire)
    if not recognised:
        return coerce_legacy(parsed) if isinstance(parsed, str) else parsed

    if is_single_wire(parsed):
        return decode_single(parsed)
    return {locale: decode_single(item) for locale, item in parsed.items()}


def resolve_localized(wire: Any, locale: str, fallback_locale: str | None = None) -> Any:
    """
    Pick the value for ``locale`` from a translatable wire value.

    Falls back to ``fallback_locale`` and then to the first stored entry.
    Non-translatable values are returned whatever locale is requested.
    """
    recognised, parsed = _parse_wire(wire)
    if not recognised or not is_translatable_wire(parsed):
        return decode(wire)

    if locale in parsed:
        return decode_single(parsed[locale])
    if fallback_locale and fallback_locale in parsed:
        return decode_single(parsed[fallback_locale])
    first = next(iter(parsed.values()))
    return decode_single(first)


__all__ = [
    "LOCALE_PATTERN",
    "TaggedValue",
    "ValueKind",
    "WireValue",
    "coerce_legacy",
    "decode",
    "decode_single",
    "encode",
    "encode_single",
    "is_locale_code",
    "is_translatable",
    "is_translatable_wire",
    "resolve_localized",
    "to_json",
]
