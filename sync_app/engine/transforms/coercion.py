"""Type coercion used by ``coerce`` transforms."""

from __future__ import annotations

import json
import math
import re
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

_TARGET_PATTERN = re.compile(r"^\s*([a-z_]+)\s*(?:\(\s*(\d+|max)\s*(?:,\s*(\d+)\s*)?\))?\s*$", re.IGNORECASE)
_GID_SUFFIX = re.compile(r"/(\d+)$")
_DECIMAL_TEXT = re.compile(r"^-?\d+(\.\d+)?$")
_INTEGER_TEXT = re.compile(r"^-?\d+$")

TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})
FALSE_STRINGS = frozenset({"false", "0", "no", "n", "off", ""})

_ALIASES = {
    "string": "string",
    "str": "string",
    "text": "string",
    "char": "string",
    "nchar": "string",
    "varchar": "string",
    "nvarchar": "string",
    "int": "int",
    "integer": "int",
    "smallint": "int",
    "tinyint": "int",
    "float": "float",
    "double": "float",
    "real": "float",
    "number": "float",
    "boolean": "boolean",
    "bool": "boolean",
    "bit": "boolean",
    "date": "date",
    "datetime": "datetime",
    "datetime2": "datetime",
    "timestamp": "datetime",
    "decimal": "decimal",
    "numeric": "decimal",
    "money": "decimal",
    "bigint": "bigint",
}

COERCION_TARGETS = frozenset(_ALIASES.values())


class CoercionError(ValueError):
    """Raised when a value cannot be converted to the requested type."""


def parse_target_type(target_type: str) -> tuple[str, int | None]:
    """
    Normalize a target type such as ``decimal(10,2)`` to ``("decimal", 2)``.

    The second element is the decimal scale when one was given.
    """
    match = _TARGET_PATTERN.match(target_type or "")
    if not match:
        raise CoercionError(f"Unknown target type: {target_type}")
    name = _ALIASES.get(match.group(1).lower())
    if name is None:
        raise CoercionError(f"Unknown target type: {target_type}")
    scale = int(match.group(3)) if name == "decimal" and match.group(3) else None
    return name, scale


def coerce_value(value: Any, target_type: str) -> Any:
    """Convert ``value`` to ``target_type``; ``None`` always passes through."""

    name, scale = parse_target_type(target_type)
    if value is None:
        return None
    converter = _CONVERTERS[name]
    if name == "decimal":
        return converter(value, scale)
    return converter(value)


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _finite(value: float) -> float:
    if not math.isfinite(value):
        raise CoercionError("Value is not finite")
    return value


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return math.trunc(_finite(float(value)))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        match = re.match(r"^[-+]?\d+", text)
        if not match:
            raise CoercionError(f'Cannot parse "{value}" as integer')
        return int(match.group(0))
    raise CoercionError(f"Cannot coerce {type(value).__name__} to int")


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, Decimal)):
        return _finite(float(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return _finite(float(text))
        except ValueError as exc:
            raise CoercionError(f'Cannot parse "{value}" as float') from exc
    raise CoercionError(f"Cannot coerce {type(value).__name__} to float")


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
        raise CoercionError(f'Cannot parse "{value}" as boolean')
    raise CoercionError(f"Cannot coerce {type(value).__name__} to boolean")


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise CoercionError("Cannot coerce bool to datetime")
    if isinstance(value, (int, float)):
        # Numeric input is epoch milliseconds.
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise CoercionError("Invalid timestamp") from exc
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise CoercionError(f'Cannot parse "{value}" as datetime') from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise CoercionError(f"Cannot coerce {type(value).__name__} to datetime")


def _to_date(value: Any) -> str | None:
    parsed = _parse_datetime(value)
    return parsed.date().isoformat() if parsed is not None else None


def _to_datetime(value: Any) -> str | None:
    parsed = _parse_datetime(value)
    return parsed.astimezone(timezone.utc).isoformat() if parsed is not None else None


def _to_decimal(value: Any, scale: int | None) -> str | None:
    if isinstance(value, bool):
        raise CoercionError("Cannot coerce bool to decimal")
    if isinstance(value, (int, float, Decimal)):
        if isinstance(value, float):
            _finite(value)
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if not _DECIMAL_TEXT.match(text):
            raise CoercionError(f'Cannot parse "{value}" as decimal')
        number = Decimal(text)
    else:
        raise CoercionError(f"Cannot coerce {type(value).__name__} to decimal")
    if scale is not None:
        try:
            number = number.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)
        except InvalidOperation as exc:
            raise CoercionError(f"Cannot fit {value!r} into scale {scale}") from exc
    return str(number)


def _to_bigint(value: Any) -> str | None:
    if isinstance(value, bool):
        raise CoercionError("Cannot coerce bool to bigint")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise CoercionError("Value must be a finite integer")
        return str(int(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        gid = _GID_SUFFIX.search(text)
        if gid:
            return gid.group(1)
        if not _INTEGER_TEXT.match(text):
            raise CoercionError(f'Cannot parse "{value}" as bigint')
        return text
    raise CoercionError(f"Cannot coerce {type(value).__name__} to bigint")


_CONVERTERS = {
    "string": _to_string,
    "int": _to_int,
    "float": _to_float,
    "boolean": _to_boolean,
    "date": _to_date,
    "datetime": _to_datetime,
    "decimal": _to_decimal,
    "bigint": _to_bigint,
}
