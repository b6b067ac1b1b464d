"""Tests for the result formatter.

Validates that the formatter:
- Renders zero rows as the fixed sentinel with no table scaffolding
- Renders one row as label/value lines, skipping empty fields
- Renders several rows as a markdown table after the row-count marker
- Formats values by Schema Map type first, then by value and column name
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from dataagent.catalog.schema_map import ColumnSchema, SemanticType
from dataagent.explain.formatter import (
    EMPTY_RESULT_MESSAGE,
    format_results,
    format_value,
    generate_result_summary,
    humanize_column,
    is_currency_column,
)


# ============================================================================
# Column naming
# ============================================================================

@pytest.mark.parametrize(
    "name,expected",
    [
        ("total_spent", "Total Spent"),
        ("customer_id", "Customer ID"),
        ("org_id", "Org ID"),
        ("id", "ID"),
        ("landing_page_url", "Landing Page URL"),
    ],
)
def test_humanize_column(name, expected):
    assert humanize_column(name) == expected


@pytest.mark.parametrize(
    "name,expected",
    [
        ("total_spent", True),
        ("total_price", True),
        ("total_revenue", True),
        ("total", True),
        ("total_value", True),
        ("total_customers", False),
        ("orders_count", False),
        ("engagement_score", False),
    ],
)
def test_currency_detection(name, expected):
    assert is_currency_column(name) is expected


# ============================================================================
# Value formatting
# ============================================================================

class TestFormatValue:
    def test_null_is_blank(self):
        assert format_value("email", None) == ""

    def test_booleans(self):
        assert format_value("accepts_marketing", True) == "Yes"
        assert format_value("accepts_marketing", False) == "No"

    def test_uuid_is_abbreviated(self):
        assert format_value("id", "1b4e28ba-2fa1-11d2-883f-0016d3cca427") == "1b4e28ba..."

    def test_currency(self):
        assert format_value("total_revenue", Decimal("75000")) == "$75,000.00"
        assert format_value("total_spent", 1234.5) == "$1,234.50"

    def test_counts_stay_integers(self):
        assert format_value("total_customers", 150) == "150"
        assert format_value("orders_count", 12345) == "12,345"

    def test_plain_decimals(self):
        assert format_value("engagement_score", 1234.567) == "1,234.57"

    def test_dates(self):
        assert format_value("created_at", date(2024, 3, 5)) == "Mar 5, 2024"
        assert format_value("created_at", datetime(2024, 12, 25, 10, 0)) == "Dec 25, 2024"

    def test_iso_date_strings(self):
        assert format_value("created_at", "2024-03-05T10:00:00Z") == "Mar 5, 2024"

    def test_arrays(self):
        assert format_value("tags", ["vip", "newsletter"]) == "vip, newsletter"
        assert format_value("tags", []) == "[]"
        assert format_value("line_items", [{"sku": "A"}, {"sku": "B"}]) == "[2 items]"

    def test_objects(self):
        assert format_value("address", {"city": "Austin", "zip": None}) == "city: Austin"
        assert format_value("address", {}) == "{}"

    def test_schema_type_upgrades_text(self):
        jsonb = ColumnSchema(name="attributes", type=SemanticType.JSONB)
        assert format_value("attributes", '{"color": "red"}', jsonb) == "color: red"

        numeric = ColumnSchema(name="score", type=SemanticType.NUMERIC)
        assert format_value("score", "42", numeric) == "42"

        uuid_col = ColumnSchema(name="ref", type=SemanticType.UUID)
        assert format_value("ref", "abcdef0123456789", uuid_col) == "abcdef01..."

    def test_text_passthrough(self):
        assert format_value("city", "Springfield") == "Springfield"


# ============================================================================
# Result rendering
# ============================================================================

def test_empty_result_is_sentinel():
    assert format_results([]) == EMPTY_RESULT_MESSAGE
    assert "|" not in format_results([])


def test_single_row_skips_empty_fields():
    row = {"id": None, "first_name": "Alice", "notes": "", "total_spent": Decimal("1200.00")}
    assert format_results([row]) == "**First Name**: Alice\n**Total Spent**: $1,200.00"


def test_multi_row_table():
    rows = [
        {"first_name": "Alice", "total_spent": 1200, "city": None},
        {"first_name": "Bob", "total_spent": 100, "city": "Austin"},
        {"first_name": "Carol", "total_spent": 200, "city": "Reno"},
    ]
    lines = format_results(rows).split("\n")

    assert lines[0] == "<!--INLINE_TABLE:3-->"
    assert "First Name" in lines[1] and "Total Spent" in lines[1]
    assert set(lines[2].replace("|", "").replace(" ", "")) == {"-"}
    assert len(lines) == 3 + len(rows)
    assert "$1,200.00" in lines[3]
    # Empty cells render as a dash
    assert lines[3].split("|")[3].strip() == "-"


def test_table_cells_are_escaped_and_truncated():
    rows = [
        {"name": "a|b", "note": "x" * 60},
        {"name": "c", "note": "short"},
    ]
    output = format_results(rows)

    assert "a\\|b" in output
    assert "x" * 37 + "..." in output
    assert "x" * 38 not in output


def test_result_summary():
    rows = [{"first_name": f"Customer {i}", "total_spent": i} for i in range(5)]
    summary = generate_result_summary(rows, "list customers")

    assert "Query: list customers" in summary
    assert "Results: 5 rows" in summary
    assert "Columns: first_name, total_spent" in summary
    assert "... and 2 more rows" in summary


def test_result_summary_empty():
    assert generate_result_summary([], "list customers") == "No results found for: list customers"
