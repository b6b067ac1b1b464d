"""Result presenter: deterministic output layer after execution.

Three responsibilities, all in code, no LLM calls:

1. Row count validation. The Validation Gate verdict is returned alongside
   the presentation so the orchestrator can spend its single retry.
2. Template selection. A decision tree on the plan and the data shape picks
   a profile card, a ranked chart, metric cards or a table.
3. Narrative. A factual summary built from the rows, with AI-inferred fields
   marked once each and a trailing disclaimer.

The presenter mutates ``narrative_summary`` and ``visualization`` on the
result; presenting the same result and plan again yields the same output.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from dataagent.catalog.schema_map import ColumnSchema, SchemaMap
from dataagent.errors import PresentationFallback
from dataagent.execution.validation import ValidationVerdict, validate_result
from dataagent.explain.formatter import (
    EMPTY_RESULT_MESSAGE,
    column_lookup,
    format_value,
    humanize_column,
)
from dataagent.explain.values import (
    ValueKind,
    as_number,
    classify_value,
    is_identifier_column,
    is_uuid_like,
)
from dataagent.planning.schema import QueryPlan
from dataagent.results import (
    ChartVisualization,
    Confidence,
    MetricCard,
    MetricVisualization,
    ProfileField,
    ProfileSection,
    ProfileVisualization,
    QueryResult,
    TableVisualization,
)

logger = logging.getLogger(__name__)

CHART_COLORS = [
    "#4F46E5",  # indigo
    "#0EA5E9",  # sky
    "#10B981",  # emerald
    "#F59E0B",  # amber
    "#EF4444",  # red
    "#8B5CF6",  # violet
    "#EC4899",  # pink
    "#06B6D4",  # cyan
]

AI_INFERRED_MARKER = "_(AI-inferred)_"

MAX_TITLE_CHARS = 60
MAX_NARRATIVE_ROWS = 20
MAX_AUTO_CHART_ROWS = 15
MAX_METRIC_COLUMNS = 3

RANKING_WORDS = ("top", "best", "worst", "highest", "lowest", "most", "least", "rank")
AGGREGATE_WORDS = ("total", "how many", "how much", "average", "sum of")

DATE_PATTERNS = ("date", "month", "year", "week", "day", "period", "quarter", "_at", "timestamp")
LABEL_PATTERNS = (
    "name", "title", "label", "email", "customer", "product", "category", "type",
    "status", "stage", "city", "state", "province", "country", "region",
)

OVERVIEW_PATTERNS = (
    "first_name", "last_name", "name", "email", "phone", "city", "state", "province",
    "zip", "country", "address", "tags", "created_at",
)
PURCHASE_PATTERNS = ("order", "spent", "total", "revenue", "purchase", "avg_order", "price", "amount")
BEHAVIORAL_PATTERNS = (
    "lifecycle", "communication", "engagement", "risk", "affinity", "behavioral",
    "segment", "score", "preference", "predicted",
)


# =============================================================================
# Column classification
# =============================================================================

def _display_columns(rows: list[dict[str, Any]]) -> list[str]:
    """Columns suitable for profile and metric views: no identifiers, no UUID values."""
    if not rows:
        return []
    columns = []
    for col in rows[0]:
        if is_identifier_column(col):
            continue
        if any(is_uuid_like(row.get(col)) for row in rows):
            continue
        columns.append(col)
    return columns


def numeric_columns(rows: list[dict[str, Any]]) -> list[str]:
    """Non-identifier columns whose first non-null value is a number."""
    result = []
    for col in _display_columns(rows):
        sample = next((row[col] for row in rows if row.get(col) is not None), None)
        if sample is not None and as_number(sample) is not None:
            result.append(col)
    return result


def date_columns(columns: list[str]) -> list[str]:
    return [c for c in columns if any(p in c.lower() for p in DATE_PATTERNS)]


def label_columns(columns: list[str], exclude: list[str] | tuple = ()) -> list[str]:
    return [
        c for c in columns
        if c not in exclude
        and not is_identifier_column(c)
        and any(p in c.lower() for p in LABEL_PATTERNS)
    ]


def has_identity_context(columns: list[str]) -> bool:
    """An email field plus a name-like field."""
    lowered = [c.lower() for c in columns]
    has_email = any("email" in c for c in lowered)
    has_name = any("name" in c and "email" not in c for c in lowered)
    return has_email and has_name


def _intent_has(plan: QueryPlan, words: tuple[str, ...]) -> bool:
    lower = plan.intent.lower()
    return any(w in lower for w in words)


def _is_aggregate_row(rows: list[dict[str, Any]], plan: QueryPlan) -> bool:
    """Single-row result shaped like an aggregate."""
    if len(rows) != 1:
        return False
    numeric = numeric_columns(rows)
    if not numeric:
        return False
    display = _display_columns(rows)
    if len(numeric) == len(display) and len(numeric) <= MAX_METRIC_COLUMNS:
        return True
    return _intent_has(plan, AGGREGATE_WORDS)


def build_title(plan: QueryPlan) -> str:
    title = plan.intent.strip()
    title = title[:1].upper() + title[1:]
    if len(title) > MAX_TITLE_CHARS:
        title = title[: MAX_TITLE_CHARS - 3] + "..."
    return title


def _chart_number(value: Any) -> Any:
    number = as_number(value)
    if number is None:
        return value
    if isinstance(number, Decimal):
        return float(number)
    return number


# =============================================================================
# Visualization builders
# =============================================================================

def build_profile(
    result: QueryResult,
    plan: QueryPlan,
    lookup: dict[str, ColumnSchema] | None = None,
) -> ProfileVisualization:
    """Sectioned profile card for a single record with identity fields."""
    lookup = lookup or {}
    row = result.data[0]
    confidence = result.confidence_map()

    buckets: dict[str, list[str]] = {
        "Overview": [],
        "Purchase History": [],
        "Behavioral Profile": [],
        "Additional Details": [],
    }
    for col in _display_columns(result.data):
        if classify_value(row[col]).is_empty:
            continue
        lower = col.lower()
        if any(p in lower for p in OVERVIEW_PATTERNS):
            buckets["Overview"].append(col)
        elif any(p in lower for p in PURCHASE_PATTERNS):
            buckets["Purchase History"].append(col)
        elif any(p in lower for p in BEHAVIORAL_PATTERNS):
            buckets["Behavioral Profile"].append(col)
        else:
            buckets["Additional Details"].append(col)

    sections = [
        ProfileSection(
            title=title,
            fields=[
                ProfileField(
                    label=humanize_column(col),
                    value=format_value(col, row[col], lookup.get(col)),
                    confidence=confidence.get(col, Confidence.VERIFIED),
                )
                for col in cols
            ],
        )
        for title, cols in buckets.items()
        if cols
    ]
    if not sections:
        raise PresentationFallback("Profile has no displayable fields", stage="present")

    return ProfileVisualization(title=_profile_title(row, plan), profile_sections=sections)


def _profile_title(row: dict[str, Any], plan: QueryPlan) -> str:
    first = row.get("first_name") or row.get("name")
    last = row.get("last_name")
    if first:
        return f"{first} {last}" if last else str(first)
    for col, value in row.items():
        if is_identifier_column(col) or is_uuid_like(value):
            continue
        cell = classify_value(value)
        if cell.kind == ValueKind.TEXT and not cell.is_empty and as_number(value) is None:
            return cell.raw
    return build_title(plan)


def build_detail_card(
    result: QueryResult,
    plan: QueryPlan,
    lookup: dict[str, ColumnSchema] | None = None,
) -> ProfileVisualization:
    """Single record without identity context: one generic Details section."""
    lookup = lookup or {}
    row = result.data[0]
    confidence = result.confidence_map()
    fields = [
        ProfileField(
            label=humanize_column(col),
            value=format_value(col, row[col], lookup.get(col)),
            confidence=confidence.get(col, Confidence.VERIFIED),
        )
        for col in _display_columns(result.data)
        if not classify_value(row[col]).is_empty
    ]
    if not fields:
        raise PresentationFallback("Detail card has no displayable fields", stage="present")
    return ProfileVisualization(
        title=build_title(plan),
        profile_sections=[ProfileSection(title="Details", fields=fields)],
    )


def build_metric_cards(
    result: QueryResult,
    plan: QueryPlan,
    lookup: dict[str, ColumnSchema] | None = None,
) -> MetricVisualization:
    """One card per numeric column; several rows are summed into computed cards."""
    lookup = lookup or {}
    data = result.data
    numeric = numeric_columns(data)
    if not numeric:
        raise PresentationFallback("No numeric columns for metric cards", stage="present")

    confidence = result.confidence_map()
    cards: list[MetricCard] = []
    if len(data) == 1:
        row = data[0]
        for col in numeric:
            cards.append(
                MetricCard(
                    label=humanize_column(col),
                    value=format_value(col, row[col], lookup.get(col)),
                    confidence=confidence.get(col, Confidence.VERIFIED),
                )
            )
    else:
        for col in numeric:
            values = [as_number(row.get(col)) for row in data]
            values = [v for v in values if v is not None]
            if not values:
                continue
            total = sum(float(v) if isinstance(v, Decimal) else v for v in values)
            cards.append(
                MetricCard(
                    label=f"Total {humanize_column(col)}",
                    value=format_value(col, total),
                    confidence=Confidence.COMPUTED,
                )
            )

    return MetricVisualization(title=build_title(plan), metric_cards=cards)


def build_chart(
    result: QueryResult,
    plan: QueryPlan,
    chart_type: str = "bar",
) -> ChartVisualization:
    data = result.data
    columns = list(data[0].keys())
    numeric = numeric_columns(data)
    if not numeric:
        raise PresentationFallback("No numeric columns to chart", stage="present")

    labels = label_columns(columns, exclude=numeric)
    dates = date_columns(columns)
    if chart_type == "line" and dates:
        x_key = dates[0]
    elif labels:
        x_key = labels[0]
    else:
        candidates = [c for c in columns if c not in numeric and not is_identifier_column(c)]
        if not candidates:
            raise PresentationFallback("No label column for chart axis", stage="present")
        x_key = candidates[0]

    y_keys = [c for c in numeric if c != x_key][:3]
    if not y_keys:
        raise PresentationFallback("No value column for chart", stage="present")

    chart_data = []
    for row in data:
        point = {x_key: format_value(x_key, row.get(x_key)) if x_key in dates else row.get(x_key)}
        for col in y_keys:
            point[col] = _chart_number(row.get(col))
        chart_data.append(point)

    return ChartVisualization(
        title=build_title(plan),
        chart_type=chart_type,
        chart_data=chart_data,
        x_key=x_key,
        y_keys=y_keys,
        colors=CHART_COLORS[: len(y_keys)],
    )


def build_ranked_list(result: QueryResult, plan: QueryPlan) -> ChartVisualization:
    """Ranked list: a bar chart over rows already ordered by the statement."""
    if len(result.data) < 2 or not label_columns(result.columns, exclude=numeric_columns(result.data)):
        raise PresentationFallback("Ranked list needs several labelled rows", stage="present")
    return build_chart(result, plan, "bar")


def build_table(
    result: QueryResult,
    plan: QueryPlan,
    lookup: dict[str, ColumnSchema] | None = None,
) -> TableVisualization:
    """Every row and every column, identifiers included."""
    lookup = lookup or {}
    columns = result.columns
    rows = [
        [format_value(col, row.get(col), lookup.get(col)) or "-" for col in columns]
        for row in result.data
    ]
    count = len(rows)
    return TableVisualization(
        title=build_title(plan),
        table_headers=[humanize_column(c) for c in columns],
        table_rows=rows,
        table_footer=f"{count} result{'s' if count != 1 else ''}",
    )


def pick_chart_type(rows: list[dict[str, Any]]) -> str:
    """Chart flavour for an explicit chart request."""
    columns = list(rows[0].keys())
    numeric = numeric_columns(rows)
    if date_columns(columns) and numeric:
        return "line"
    if len(rows) <= 5 and len(numeric) == 1:
        return "pie"
    return "bar"


def auto_visualization(result: QueryResult, plan: QueryPlan, lookup: dict[str, ColumnSchema]):
    """Table or chart chosen from the data shape alone."""
    data = result.data
    columns = result.columns
    numeric = numeric_columns(data)

    if not numeric or len(data) == 1:
        return build_table(result, plan, lookup)
    if len(data) > MAX_AUTO_CHART_ROWS:
        return build_table(result, plan, lookup)
    if date_columns(columns) and len(data) >= 3:
        return build_chart(result, plan, "line")
    if label_columns(columns, exclude=numeric):
        return build_chart(result, plan, "bar")
    return build_table(result, plan, lookup)


# =============================================================================
# Template selection
# =============================================================================

def _explicit_visualization(template: str, result: QueryResult, plan: QueryPlan, lookup):
    single = len(result.data) == 1
    if template == "profile":
        if not single:
            raise PresentationFallback("Profile needs exactly one row", stage="present")
        if has_identity_context(result.columns):
            return build_profile(result, plan, lookup)
        return build_detail_card(result, plan, lookup)
    if template == "ranked_list":
        return build_ranked_list(result, plan)
    if template == "metric_summary":
        return build_metric_cards(result, plan, lookup)
    if template == "table":
        return build_table(result, plan, lookup)
    if template == "chart":
        return build_chart(result, plan, pick_chart_type(result.data))
    raise PresentationFallback(f"Unknown template {template!r}", stage="present")


def select_visualization(
    result: QueryResult,
    plan: QueryPlan,
    schema_map: SchemaMap | None = None,
):
    """
    Pick and build the visualization for a successful, non-empty result.

    Precedence:
        1. Explicit ``output_template`` on the plan, when it fits the data
        2. Single row with identity fields → sectioned profile
        3. Single aggregate-shaped row → metric cards
        4. Any other single row → generic Details profile
        5. Several numeric rows with ranking intent → ranked bar chart
        6. Otherwise → table or chart from the data shape

    A template that cannot be built from the data falls back to a table.
    """
    lookup = column_lookup(schema_map, plan.tables_needed)
    data = result.data
    columns = result.columns

    template = plan.template_override
    if template:
        try:
            return _explicit_visualization(template, result, plan, lookup)
        except PresentationFallback as e:
            logger.debug("Explicit template %s not applicable: %s", template, e)

    try:
        if len(data) == 1:
            if has_identity_context(columns):
                return build_profile(result, plan, lookup)
            if _is_aggregate_row(data, plan):
                return build_metric_cards(result, plan, lookup)
            return build_detail_card(result, plan, lookup)

        if numeric_columns(data) and _intent_has(plan, RANKING_WORDS):
            return build_ranked_list(result, plan)

        return auto_visualization(result, plan, lookup)
    except PresentationFallback as e:
        logger.info("Presentation fell back to table: %s", e)
        return build_table(result, plan, lookup)


# =============================================================================
# Narrative
# =============================================================================

@dataclass
class _Fragment:
    text: str
    field: str | None = None


def _detail_lines(row: dict[str, Any], lookup: dict[str, ColumnSchema]) -> list[list[_Fragment]]:
    lines = []
    for col in _display_columns([row]):
        if classify_value(row[col]).is_empty:
            continue
        text = f"- **{humanize_column(col)}**: {format_value(col, row[col], lookup.get(col))}"
        lines.append([_Fragment(text, col)])
    return lines


def _row_label(row: dict[str, Any], label_col: str, lookup: dict[str, ColumnSchema]) -> str:
    label = format_value(label_col, row.get(label_col), lookup.get(label_col)) or "-"
    if label_col == "first_name" and row.get("last_name"):
        label = f"{label} {row['last_name']}"
    return label


def _list_lines(
    rows: list[dict[str, Any]],
    plan: QueryPlan,
    lookup: dict[str, ColumnSchema],
) -> list[list[_Fragment]]:
    columns = list(rows[0].keys())
    display = _display_columns(rows)
    numeric = numeric_columns(rows)
    labels = label_columns(display, exclude=numeric)
    label_col = labels[0] if labels else (display[0] if display else columns[0])
    value_cols = [c for c in numeric if c != label_col]

    lines: list[list[_Fragment]] = [[_Fragment(f"**{build_title(plan)}** ({len(rows)} results):")]]
    for i, row in enumerate(rows[:MAX_NARRATIVE_ROWS], start=1):
        line = [_Fragment(f"{i}. **{_row_label(row, label_col, lookup)}**", label_col)]
        if value_cols:
            main, extras = value_cols[0], value_cols[1:3]
            line.append(_Fragment(" - "))
            line.append(_Fragment(_field_text(main, row, lookup), main))
            if extras:
                line.append(_Fragment(" ("))
                for j, col in enumerate(extras):
                    if j:
                        line.append(_Fragment(", "))
                    line.append(_Fragment(_field_text(col, row, lookup), col))
                line.append(_Fragment(")"))
        else:
            details = [c for c in display if c != label_col and c != "last_name"][:3]
            for j, col in enumerate(details):
                line.append(_Fragment(" - " if j == 0 else ", "))
                line.append(_Fragment(_field_text(col, row, lookup), col))
        lines.append(line)

    if len(rows) > MAX_NARRATIVE_ROWS:
        lines.append([_Fragment(f"... and {len(rows) - MAX_NARRATIVE_ROWS} more")])
    return lines


def _field_text(col: str, row: dict[str, Any], lookup: dict[str, ColumnSchema]) -> str:
    value = format_value(col, row.get(col), lookup.get(col)) or "N/A"
    return f"{humanize_column(col)}: {value}"


def annotate_confidence(lines: list[list[_Fragment]], inferred: list[str]) -> str:
    """Mark the first mention of every AI-inferred field, then add one disclaimer."""
    remaining = list(inferred)
    for line in lines:
        for fragment in line:
            if fragment.field in remaining:
                fragment.text = f"{fragment.text} {AI_INFERRED_MARKER}"
                remaining.remove(fragment.field)

    text = "\n".join("".join(f.text for f in line) for line in lines)
    if remaining:
        also = ", ".join(f"**{humanize_column(f)}** {AI_INFERRED_MARKER}" for f in remaining)
        text += f"\nAlso returned: {also}"
    if inferred:
        names = ", ".join(humanize_column(f) for f in inferred)
        verb = "is" if len(inferred) == 1 else "are"
        text += f"\n\n_Note: {names} {verb} AI-generated and may not be 100% accurate._"
    return text


def build_narrative(
    result: QueryResult,
    plan: QueryPlan,
    schema_map: SchemaMap | None = None,
) -> str:
    """Factual summary of the rows; the chat layer wraps it, never re-reads the table."""
    data = result.data
    if not data:
        return EMPTY_RESULT_MESSAGE

    lookup = column_lookup(schema_map, plan.tables_needed)
    lines = _detail_lines(data[0], lookup) if len(data) == 1 else _list_lines(data, plan, lookup)

    present = set(data[0].keys())
    inferred = [
        fc.field
        for fc in result.field_confidence
        if fc.confidence == Confidence.AI_INFERRED and fc.field in present
    ]
    # One mark per field even if the confidence list repeats it
    inferred = list(dict.fromkeys(inferred))
    return annotate_confidence(lines, inferred)


# =============================================================================
# Public API
# =============================================================================

def present_results(
    result: QueryResult,
    plan: QueryPlan,
    schema_map: SchemaMap | None = None,
) -> ValidationVerdict:
    """
    Attach ``visualization`` and ``narrative_summary`` to ``result``.

    Args:
        result: Executed query result (mutated in place)
        plan: The plan the result was produced for
        schema_map: Schema Map used for column display types

    Returns:
        Validation Gate verdict; ``needs_retry`` is True when the statement's
        LIMIT under-fetched the rows the user asked for
    """
    if not result.success:
        result.visualization = None
        return ValidationVerdict(False)

    if not result.data:
        result.visualization = None
        result.narrative_summary = EMPTY_RESULT_MESSAGE
        return ValidationVerdict(False)

    verdict = validate_result(result, plan)
    result.visualization = select_visualization(result, plan, schema_map)
    result.narrative_summary = build_narrative(result, plan, schema_map)
    return verdict
