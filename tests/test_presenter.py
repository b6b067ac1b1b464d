"""Tests for the result presenter.

This module validates that the presenter:
- Picks profile, metric, chart and table views from the plan and data shape
- Never shows identifier columns on profile cards
- Falls back to a table when a template cannot be built
- Marks AI-inferred fields exactly once, with a single disclaimer
- Is idempotent: presenting the same result twice yields the same output
"""

from decimal import Decimal

from dataagent.explain.presenter import (
    AI_INFERRED_MARKER,
    build_narrative,
    present_results,
    select_visualization,
)
from dataagent.planning.schema import QueryPlan
from dataagent.results import Confidence, FieldConfidence, QueryResult

ALICE_ID = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"


# ============================================================================
# Helper Functions
# ============================================================================

def _result(rows, *, sql="SELECT * FROM ecom_customers c WHERE c.org_id = 'org_a' LIMIT 100", confidence=None):
    return QueryResult(
        success=True,
        sql=sql,
        data=rows,
        row_count=len(rows),
        field_confidence=confidence or [],
    )


def _plan(intent, **kwargs):
    kwargs.setdefault("domain", "ecommerce")
    kwargs.setdefault("tables_needed", ["ecom_customers"])
    return QueryPlan(intent=intent, **kwargs)


def _inferred(*fields):
    return [
        FieldConfidence(field=f, confidence=Confidence.AI_INFERRED, source_table="customer_behavioral_profiles")
        for f in fields
    ]


# ============================================================================
# Template Selection
# ============================================================================

class TestProfile:
    def _alice(self):
        return {
            "id": ALICE_ID,
            "org_id": "org_a",
            "first_name": "Alice",
            "last_name": "Smith",
            "email": "alice@example.com",
            "total_spent": Decimal("1200.50"),
            "orders_count": 7,
        }

    def test_single_customer_renders_profile(self):
        result = _result([self._alice()])
        present_results(result, _plan("Tell me about Alice Smith"))

        viz = result.visualization
        assert viz.type == "profile"
        assert viz.title == "Alice Smith"

        sections = {s.title: s for s in viz.profile_sections}
        overview_labels = [f.label for f in sections["Overview"].fields]
        assert "Email" in overview_labels
        assert "First Name" in overview_labels

        purchase = {f.label: f.value for f in sections["Purchase History"].fields}
        assert purchase["Total Spent"] == "$1,200.50"
        assert purchase["Orders Count"] == "7"

    def test_profile_hides_identifiers(self):
        result = _result([self._alice()])
        present_results(result, _plan("Tell me about Alice Smith"))

        labels = [f.label for s in result.visualization.profile_sections for f in s.fields]
        assert "ID" not in labels
        assert "Org ID" not in labels

    def test_ai_inferred_fields_carry_confidence(self):
        row = {**self._alice(), "lifecycle_stage": "champion"}
        result = _result([row], confidence=_inferred("lifecycle_stage"))
        present_results(result, _plan("Tell me about Alice Smith"))

        sections = {s.title: s for s in result.visualization.profile_sections}
        field = sections["Behavioral Profile"].fields[0]
        assert field.label == "Lifecycle Stage"
        assert field.confidence == Confidence.AI_INFERRED

    def test_record_without_identity_gets_details_card(self):
        result = _result([{"id": "p1", "title": "Widget", "product_type": "Gadget", "price": Decimal("19.99")}])
        present_results(result, _plan("tell me about the widget", tables_needed=["ecom_products"]))

        viz = result.visualization
        assert viz.type == "profile"
        assert [s.title for s in viz.profile_sections] == ["Details"]
        assert {f.label: f.value for f in viz.profile_sections[0].fields}["Price"] == "$19.99"


class TestMetrics:
    def test_aggregate_row_renders_metric_cards(self):
        result = _result([{"total_customers": 150, "total_revenue": Decimal("75000")}])
        present_results(result, _plan("total customers and revenue"))

        viz = result.visualization
        assert viz.type == "metric"
        assert [(c.label, c.value) for c in viz.metric_cards] == [
            ("Total Customers", "150"),
            ("Total Revenue", "$75,000.00"),
        ]

    def test_metric_summary_over_rows_is_computed(self):
        rows = [{"state": "NY", "orders_count": 3}, {"state": "CA", "orders_count": 4}]
        result = _result(rows)
        present_results(result, _plan("orders by state", output_template="metric_summary"))

        card = result.visualization.metric_cards[0]
        assert card.label == "Total Orders Count"
        assert card.value == "7"
        assert card.confidence == Confidence.COMPUTED


class TestChartsAndTables:
    def test_ranked_list_is_bar_chart(self):
        rows = [
            {"first_name": name, "total_spent": spent}
            for name, spent in [("Alice", 1200), ("Niaj", 1100), ("Mallory", 1000), ("Judy", 900), ("Ivan", 800)]
        ]
        result = _result(rows, sql="SELECT first_name, total_spent FROM ecom_customers LIMIT 5")
        plan = _plan("top 5 customers by spend", expected_count=5, output_template="ranked_list")
        present_results(result, plan)

        viz = result.visualization
        assert viz.type == "chart"
        assert viz.chart_type == "bar"
        assert viz.x_key == "first_name"
        assert viz.y_keys == ["total_spent"]
        assert viz.chart_data[0] == {"first_name": "Alice", "total_spent": 1200}
        assert len(viz.colors) == 1

    def test_chart_values_are_plain_numbers(self):
        rows = [{"state": "NY", "revenue": Decimal("10.50")}, {"state": "CA", "revenue": Decimal("5.25")}]
        result = _result(rows)
        present_results(result, _plan("revenue by state", output_template="chart"))

        assert result.visualization.type == "chart"
        assert result.visualization.chart_data[0]["revenue"] == 10.5

    def test_time_series_is_line_chart(self):
        rows = [{"month": f"2024-0{m}-01", "order_total": m * 100} for m in range(1, 5)]
        result = _result(rows)
        present_results(result, _plan("orders over time", tables_needed=["ecom_orders"]))

        viz = result.visualization
        assert viz.type == "chart"
        assert viz.chart_type == "line"
        assert viz.x_key == "month"
        assert viz.chart_data[0]["month"] == "Jan 1, 2024"

    def test_long_listing_is_table(self):
        rows = [
            {"id": f"00000000-0000-4000-8000-{i:012d}", "first_name": f"Customer {i}", "total_spent": i * 10}
            for i in range(25)
        ]
        result = _result(rows)
        present_results(result, _plan("show customers"))

        viz = result.visualization
        assert viz.type == "table"
        assert len(viz.table_rows) == 25
        assert viz.table_footer == "25 results"
        # Tables keep identifier columns
        assert viz.table_headers[0] == "ID"

    def test_unbuildable_template_falls_back_to_table(self):
        rows = [
            {"first_name": "Alice", "email": "alice@example.com"},
            {"first_name": "Bob", "email": "bob@example.com"},
        ]
        result = _result(rows)
        present_results(result, _plan("chart customer emails", output_template="chart"))

        assert result.visualization.type == "table"

    def test_profile_template_on_many_rows_falls_back(self):
        rows = [{"first_name": "Alice", "city": "Austin"}, {"first_name": "Bob", "city": "Reno"}]
        result = _result(rows)

        viz = select_visualization(result, _plan("profile of customers", output_template="profile"))
        assert viz.type == "table"


# ============================================================================
# Narrative and Confidence
# ============================================================================

class TestNarrative:
    def test_list_narrative(self):
        rows = [{"first_name": "Alice", "last_name": "Smith", "total_spent": 1200}, {"first_name": "Bob", "last_name": "Jones", "total_spent": 100}]
        narrative = build_narrative(_result(rows), _plan("top customers by spend"))

        lines = narrative.split("\n")
        assert lines[0] == "**Top customers by spend** (2 results):"
        assert lines[1] == "1. **Alice Smith** - Total Spent: $1,200.00"

    def test_single_row_narrative(self):
        narrative = build_narrative(_result([{"first_name": "Alice", "email": "alice@example.com"}]), _plan("who is alice"))
        assert narrative == "- **First Name**: Alice\n- **Email**: alice@example.com"

    def test_ai_inferred_marked_once_per_field(self):
        rows = [
            {"first_name": name, "lifecycle_stage": "champion", "engagement_score": score}
            for name, score in [("Alice", 0.9), ("Bob", 0.5), ("Carol", 0.3)]
        ]
        # Duplicate provenance entries must not produce duplicate marks
        confidence = _inferred("lifecycle_stage", "engagement_score", "lifecycle_stage")
        result = _result(rows, confidence=confidence)
        present_results(result, _plan("customers by engagement"))

        narrative = result.narrative_summary
        assert narrative.count(AI_INFERRED_MARKER) == 2
        assert narrative.count("AI-generated and may not be 100% accurate") == 1
        assert "Also returned: **Lifecycle Stage**" in narrative

    def test_single_row_ai_inferred(self):
        row = {"first_name": "Alice", "lifecycle_stage": "champion"}
        result = _result([row], confidence=_inferred("lifecycle_stage"))
        present_results(result, _plan("what stage is alice in"))

        narrative = result.narrative_summary
        assert f"- **Lifecycle Stage**: champion {AI_INFERRED_MARKER}" in narrative
        assert narrative.count(AI_INFERRED_MARKER) == 1
        assert narrative.endswith("_Note: Lifecycle Stage is AI-generated and may not be 100% accurate._")

    def test_no_disclaimer_without_inferred_fields(self):
        result = _result([{"first_name": "Alice", "total_spent": 10}, {"first_name": "Bob", "total_spent": 5}])
        present_results(result, _plan("customers"))
        assert "_Note:" not in result.narrative_summary


# ============================================================================
# Terminal Results and Idempotence
# ============================================================================

def test_empty_result_has_sentinel_and_no_visualization():
    result = _result([])
    verdict = present_results(result, _plan("show VIP customers", expected_count=5))

    assert result.narrative_summary == "No results found."
    assert result.visualization is None
    assert verdict.needs_retry is False


def test_failed_result_has_no_visualization():
    result = QueryResult.failure("Database error", error_kind="execution")
    verdict = present_results(result, _plan("show customers"))

    assert result.visualization is None
    assert verdict.needs_retry is False


def test_presenting_twice_is_identical():
    rows = [
        {"first_name": "Alice", "lifecycle_stage": "champion", "total_spent": Decimal("1200")},
        {"first_name": "Bob", "lifecycle_stage": "at_risk", "total_spent": Decimal("100")},
    ]
    result = _result(rows, confidence=_inferred("lifecycle_stage"))
    plan = _plan("top customers")

    present_results(result, plan)
    first = (result.visualization.model_dump(), result.narrative_summary)
    present_results(result, plan)
    second = (result.visualization.model_dump(), result.narrative_summary)

    assert first == second
    assert result.narrative_summary.count(AI_INFERRED_MARKER) == 1


def test_presenter_reports_under_fetch():
    result = _result([{"first_name": "Alice", "total_spent": 1200}], sql="SELECT * FROM ecom_customers LIMIT 1")
    verdict = present_results(result, _plan("top 5 customers", expected_count=5))

    assert verdict.needs_retry is True
    # Presentation still happens so a failed retry can fall back to it
    assert result.visualization is not None
