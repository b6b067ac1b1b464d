"""Tagged variants for result cell values.

Rows come back from the database with a per-field dynamic shape. Every
formatting decision goes through ``classify_value`` first so the
formatter and presenter branch on an explicit ``ValueKind`` instead of
ad-hoc isinstance checks.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
UUID_PREFIX_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}", re.IGNORECASE)


class ValueKind(str, Enum):
    NULL = "null"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    UUID = "uuid"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class CellValue:
    kind: ValueKind
    raw: Any

    @property
    def is_empty(self) -> bool:
        if self.kind == ValueKind.NULL:
            return True
        if self.kind == ValueKind.TEXT:
            return self.raw.strip() == ""
        if self.kind in (ValueKind.ARRAY, ValueKind.OBJECT):
            return len(self.raw) == 0
        return False


def classify_value(value: Any) -> CellValue:
    """Tag a raw database value with its kind."""
    if value is None:
        return CellValue(ValueKind.NULL, None)
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return CellValue(ValueKind.BOOLEAN, value)
    if isinstance(value, (int, float, Decimal)):
        return CellValue(ValueKind.NUMBER, value)
    if isinstance(value, (datetime, date, time)):
        return CellValue(ValueKind.TIMESTAMP, value)
    if isinstance(value, uuid.UUID):
        return CellValue(ValueKind.UUID, str(value))
    if isinstance(value, (list, tuple, set)):
        return CellValue(ValueKind.ARRAY, list(value))
    if isinstance(value, dict):
        return CellValue(ValueKind.OBJECT, value)
    if isinstance(value, str):
        if UUID_PATTERN.match(value):
            return CellValue(ValueKind.UUID, value)
        return CellValue(ValueKind.TEXT, value)
    return CellValue(ValueKind.TEXT, str(value))


def is_uuid_like(value: Any) -> bool:
    return isinstance(value, uuid.UUID) or (
        isinstance(value, str) and bool(UUID_PREFIX_PATTERN.match(value))
    )


def as_number(value: Any) -> float | int | Decimal | None:
    """Return ``value`` as a number, accepting numeric strings."""
    cell = classify_value(value)
    if cell.kind == ValueKind.NUMBER:
        return cell.raw
    if cell.kind == ValueKind.TEXT:
        text = cell.raw.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        if number != number or number in (float("inf"), float("-inf")):
            return None
        return int(number) if number.is_integer() and "." not in text else number
    return None


def is_identifier_column(name: str) -> bool:
    """Literal ``id``, the tenant column, or any ``*_id`` column."""
    lower = name.lower()
    return lower == "id" or lower == "org_id" or lower.endswith("_id")
