"""Result formatter: rows to chat-ready markdown.

Formatting Rules:
- Zero rows render as a fixed sentinel, no table scaffolding
- One row renders as "**Label**: value" lines; null and empty fields are omitted
- Several rows render as a markdown table preceded by a row-count marker
  that the chat renderer uses for collapse/expand
- Per-field formatting is driven by the Schema Map column type when the
  column is known, and by the runtime value plus name heuristics otherwise
"""

import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from dataagent.catalog.schema_map import ColumnSchema, SchemaMap, SemanticType
from dataagent.explain.values import CellValue, ValueKind, as_number, classify_value

EMPTY_RESULT_MESSAGE = "No results found."
ROW_COUNT_MARKER = "<!--INLINE_TABLE:{count}-->"

MAX_CELL_CHARS = 40
MAX_SUMMARY_VALUE_CHARS = 50
SUMMARY_ROWS = 3
UUID_DISPLAY_CHARS = 8

MONEY_WORDS = ("price", "spent", "revenue", "amount", "cost", "subtotal", "avg_order")
COUNT_WORDS = ("count", "customers", "orders", "products", "people", "records", "items", "num_", "number")

_UPPERCASE_WORDS = {"Id": "ID", "Url": "URL", "Sql": "SQL"}
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}(?:[T ][\d:.]+(?:Z|[+-]\d{2}:?\d{2})?)?$")


# =============================================================================
# Column naming and classification
# =============================================================================

def humanize_column(name: str) -> str:
    """``total_spent`` → ``Total Spent``; ``customer_id`` → ``Customer ID``."""
    words = [w.capitalize() for w in name.replace("_", " ").split()]
    return " ".join(_UPPERCASE_WORDS.get(w, w) for w in words)


def is_currency_column(name: str) -> bool:
    """Money-like column name.

    "total" alone is not money (``total_customers`` is a count); it is money
    when it stands alone or is combined with a money word or "value".
    """
    lower = name.lower()
    is_count = any(w in lower for w in COUNT_WORDS)
    if is_count:
        return False
    if any(w in lower for w in MONEY_WORDS):
        return True
    return "total" in lower and (lower == "total" or "value" in lower)


def column_lookup(schema_map: SchemaMap | None, tables: list[str] | None) -> dict[str, ColumnSchema]:
    """Column schemas for the plan's tables; earlier tables win on name clashes."""
    lookup: dict[str, ColumnSchema] = {}
    if schema_map is None:
        return lookup
    for table_name in tables or []:
        table = schema_map.get(table_name)
        if table is None:
            continue
        for column in table.columns:
            lookup.setdefault(column.name, column)
    return lookup


# =============================================================================
# Value formatting
# =============================================================================

def format_number(value: int | float | Decimal, *, currency: bool = False) -> str:
    if currency:
        return f"${float(value):,.2f}"
    if isinstance(value, int) or float(value).is_integer():
        return f"{int(value):,}"
    return f"{float(value):,.2f}"


def format_date(value: date | datetime) -> str:
    """``Mar 5, 2024``."""
    return f"{value:%b} {value.day}, {value.year}"


def _parse_iso_date(text: str) -> datetime | None:
    if not _ISO_DATE.match(text.strip()):
        return None
    try:
        return datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _format_structured(cell: CellValue) -> str:
    if cell.kind == ValueKind.ARRAY:
        items = cell.raw
        if not items:
            return "[]"
        if any(isinstance(item, (dict, list, tuple)) for item in items):
            return f"[{len(items)} items]"
        return ", ".join(str(item) for item in items if item is not None)

    parts = []
    for key, val in cell.raw.items():
        if val is None or val == "":
            continue
        if isinstance(val, (dict, list)):
            val = json.dumps(val, default=str)
        parts.append(f"{key}: {val}")
    return ", ".join(parts) if parts else "{}"


def _loads_json(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "[{":
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def format_value(name: str, value: Any, column: ColumnSchema | None = None) -> str:
    """Format one field for display.

    Args:
        name: Column name, used for name heuristics
        value: Raw database value
        column: Schema Map column, when the column is known

    Returns:
        Display string ("" for null values)
    """
    cell = classify_value(value)
    semantic_type = column.type if column else None

    if cell.kind == ValueKind.NULL:
        return ""
    if cell.kind == ValueKind.BOOLEAN:
        return "Yes" if cell.raw else "No"
    if cell.kind == ValueKind.UUID:
        return cell.raw[:UUID_DISPLAY_CHARS] + "..."
    if cell.kind == ValueKind.NUMBER:
        return format_number(cell.raw, currency=is_currency_column(name))
    if cell.kind == ValueKind.TIMESTAMP:
        if isinstance(cell.raw, (date, datetime)):
            return format_date(cell.raw)
        return cell.raw.isoformat()
    if cell.kind in (ValueKind.ARRAY, ValueKind.OBJECT):
        return _format_structured(cell)

    # TEXT: the declared column type can upgrade the rendering
    text = cell.raw
    if semantic_type == SemanticType.UUID:
        return text[:UUID_DISPLAY_CHARS] + "..."
    if semantic_type == SemanticType.JSONB:
        parsed = _loads_json(text)
        if parsed is not None:
            return _format_structured(classify_value(parsed))
    if semantic_type in (SemanticType.NUMERIC, SemanticType.INTEGER) or (
        semantic_type is None and is_currency_column(name)
    ):
        number = as_number(text)
        if number is not None:
            return format_number(number, currency=is_currency_column(name))
    if semantic_type == SemanticType.TIMESTAMP or semantic_type is None:
        parsed_date = _parse_iso_date(text)
        if parsed_date is not None:
            return format_date(parsed_date)
    return text


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _table_cell(text: str) -> str:
    return _truncate(text.replace("|", "\\|").replace("\n", " "), MAX_CELL_CHARS)


# =============================================================================
# Public API
# =============================================================================

def format_results(
    rows: list[dict[str, Any]],
    schema_map: SchemaMap | None = None,
    tables: list[str] | None = None,
) -> str:
    """Render query rows for the chat transcript."""
    if not rows:
        return EMPTY_RESULT_MESSAGE

    lookup = column_lookup(schema_map, tables)

    if len(rows) == 1:
        return format_single_row(rows[0], lookup)
    return format_table(rows, lookup)


def format_single_row(row: dict[str, Any], lookup: dict[str, ColumnSchema] | None = None) -> str:
    lookup = lookup or {}
    lines = []
    for name, value in row.items():
        if classify_value(value).is_empty:
            continue
        formatted = format_value(name, value, lookup.get(name))
        if not formatted:
            continue
        lines.append(f"**{humanize_column(name)}**: {formatted}")
    return "\n".join(lines) if lines else EMPTY_RESULT_MESSAGE


def format_table(rows: list[dict[str, Any]], lookup: dict[str, ColumnSchema] | None = None) -> str:
    """Markdown table with one body row per result row."""
    lookup = lookup or {}
    columns = list(rows[0].keys())
    headers = [humanize_column(c) for c in columns]
    body = [
        [_table_cell(format_value(c, row.get(c), lookup.get(c))) or "-" for c in columns]
        for row in rows
    ]

    widths = [len(h) for h in headers]
    for cells in body:
        for i, cell in enumerate(cells):
            widths[i] = max(widths[i], len(cell))

    def render(cells: list[str]) -> str:
        return "| " + " | ".join(cell.ljust(widths[i]) for i, cell in enumerate(cells)) + " |"

    lines = [
        ROW_COUNT_MARKER.format(count=len(rows)),
        render(headers),
        "| " + " | ".join("-" * w for w in widths) + " |",
    ]
    lines.extend(render(cells) for cells in body)
    return "\n".join(lines)


def generate_result_summary(rows: list[dict[str, Any]], question: str) -> str:
    """Compact plain-text summary of a result, used as conversation context."""
    if not rows:
        return f"No results found for: {question}"

    lines = [
        f"Query: {question}",
        f"Results: {len(rows)} row{'s' if len(rows) != 1 else ''}",
        f"Columns: {', '.join(rows[0].keys())}",
    ]
    for i, row in enumerate(rows[:SUMMARY_ROWS], start=1):
        values = []
        for value in row.values():
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                text = json.dumps(value, default=str)
            else:
                text = str(value)
            values.append(text[:MAX_SUMMARY_VALUE_CHARS])
        lines.append(f"Row {i}: {' | '.join(values)}")
    if len(rows) > SUMMARY_ROWS:
        lines.append(f"... and {len(rows) - SUMMARY_ROWS} more rows")
    return "\n".join(lines)
