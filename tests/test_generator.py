"""Tests for SQL generation.

Validates:
- Templated builder shapes (listing, ranking, metric, grouped count, joins)
- Deterministic edits (limit changes, sort changes, under-fetch repair)
- LLM-authored SQL passes through the same guardrails
- Unusable plans and unsafe statements raise GenerationError
"""

import pytest

from dataagent.errors import GenerationError
from dataagent.planning.schema import QueryPlan
from dataagent.sql.generator import SQLGenerator, extract_sql, quote_literal

TOP_FIVE_SQL = (
    "SELECT c.* FROM ecom_customers c WHERE c.org_id = 'org_a' "
    "ORDER BY c.total_spent DESC NULLS LAST LIMIT 5"
)


def _plan(intent, tables=("ecom_customers",), **fields):
    return QueryPlan(intent=intent, domain="ecommerce", tables_needed=list(tables), **fields)


def _fake_llm(response):
    calls = []

    def llm(messages, role="generator", **kwargs):
        calls.append((role, messages))
        if isinstance(response, Exception):
            raise response
        return response

    llm.calls = calls
    return llm


@pytest.fixture
def generator():
    return SQLGenerator(use_llm=False)


# ============================================================================
# Templated builder
# ============================================================================

class TestTemplates:
    def test_ranked_listing(self, generator, schema_map):
        plan = _plan("top 5 customers by spend", ("ecom_customers", "ecom_orders"), expected_count=5)
        generated = generator.generate(plan, schema_map, "org_a")

        assert generated.sql == TOP_FIVE_SQL
        assert generated.mode == "template"

    def test_ascending_ranking(self, generator, schema_map):
        plan = _plan("bottom 3 customers by spend", expected_count=3)
        sql = generator.generate(plan, schema_map, "org_a").sql
        assert "ORDER BY c.total_spent ASC NULLS LAST LIMIT 3" in sql

    def test_metric(self, generator, schema_map):
        plan = _plan("what is our average order value", ("ecom_orders",))
        sql = generator.generate(plan, schema_map, "org_a").sql

        assert sql == (
            "SELECT AVG(total_price) AS average_order_value FROM ecom_orders o "
            "WHERE o.org_id = 'org_a' LIMIT 100"
        )

    def test_metric_moves_primary_table(self, generator, schema_map):
        plan = _plan("how many orders", ("ecom_customers", "ecom_orders"))
        sql = generator.generate(plan, schema_map, "org_a").sql

        assert sql == "SELECT COUNT(*) AS order_count FROM ecom_orders o WHERE o.org_id = 'org_a' LIMIT 100"

    def test_grouped_count(self, generator, schema_map):
        plan = _plan("customers by state")
        sql = generator.generate(plan, schema_map, "org_a").sql

        assert sql == (
            "SELECT c.state, COUNT(*) AS record_count FROM ecom_customers c "
            "WHERE c.org_id = 'org_a' GROUP BY c.state ORDER BY record_count DESC LIMIT 100"
        )

    def test_business_term_filter(self, generator, schema_map):
        sql = generator.generate(_plan("show VIP customers"), schema_map, "org_a").sql

        assert sql == (
            "SELECT c.* FROM ecom_customers c WHERE c.org_id = 'org_a' AND (c.total_spent > 500) LIMIT 100"
        )

    def test_term_on_joined_table(self, generator, schema_map):
        plan = _plan("customers at risk", ("ecom_customers", "customer_behavioral_profiles"))
        sql = generator.generate(plan, schema_map, "org_a").sql

        assert sql.startswith("SELECT c.*, bp.lifecycle_stage, bp.engagement_score, bp.communication_style FROM")
        assert (
            "JOIN customer_behavioral_profiles bp ON bp.ecom_customer_id = c.id AND bp.org_id = c.org_id" in sql
        )
        assert "WHERE c.org_id = 'org_a' AND (bp.lifecycle_stage = 'at_risk')" in sql

    def test_term_table_not_planned_is_ignored(self, generator, schema_map):
        sql = generator.generate(_plan("customers at risk"), schema_map, "org_a").sql
        assert "JOIN" not in sql
        assert "lifecycle_stage" not in sql

    def test_active_entities_filter_foreign_key(self, generator, schema_map):
        plan = _plan(
            "show their orders",
            ("ecom_orders",),
            resolved_references={"_active_entities": ["id-1", "id-2"]},
        )
        sql = generator.generate(plan, schema_map, "org_a", entity_type="ecom_customers").sql

        assert sql == (
            "SELECT o.* FROM ecom_orders o WHERE o.org_id = 'org_a' "
            "AND o.customer_id IN ('id-1', 'id-2') LIMIT 100"
        )

    def test_active_entities_filter_same_table(self, generator, schema_map):
        plan = _plan("show them", resolved_references={"_active_entities": ["id-1"]})
        sql = generator.generate(plan, schema_map, "org_a", entity_type="ecom_customers").sql
        assert "c.id IN ('id-1')" in sql

    def test_literal_values_are_escaped(self):
        assert quote_literal("O'Brien") == "'O''Brien'"


# ============================================================================
# Deterministic edits
# ============================================================================

class TestTemplateEdits:
    def test_retry_reason_changes_limit(self, generator, schema_map):
        previous = TOP_FIVE_SQL.replace("LIMIT 5", "LIMIT 1")
        plan = _plan("top 5 customers by spend", expected_count=5).with_retry_hint(
            "The query has LIMIT 1 but the user asked for 5 rows. Change the LIMIT to 5.", previous
        )
        generated = generator.generate(plan, schema_map, "org_a")

        assert generated.sql == TOP_FIVE_SQL
        assert generated.mode == "template_edit"

    def test_limit_refinement(self, generator, schema_map):
        plan = _plan("limit to 3", edit_instruction="limit to 3", previous_sql=TOP_FIVE_SQL)
        assert generator.generate(plan, schema_map, "org_a").sql == TOP_FIVE_SQL.replace("LIMIT 5", "LIMIT 3")

    def test_under_fetch_without_limit_phrase(self, generator, schema_map):
        plan = _plan(
            "show more",
            edit_instruction="show more",
            previous_sql=TOP_FIVE_SQL.replace("LIMIT 5", "LIMIT 2"),
            expected_count=5,
        )
        assert generator.generate(plan, schema_map, "org_a").sql == TOP_FIVE_SQL

    def test_sort_refinement(self, generator, schema_map):
        plan = _plan("sort by first_name asc", edit_instruction="sort by first_name asc", previous_sql=TOP_FIVE_SQL)
        generated = generator.generate(plan, schema_map, "org_a")

        assert generated.sql == "SELECT c.* FROM ecom_customers c WHERE c.org_id = 'org_a' ORDER BY first_name ASC LIMIT 5"
        assert generated.mode == "template_edit"

    def test_sort_defaults_to_descending(self, generator, schema_map):
        plan = _plan("sort by created_at", edit_instruction="sort by created_at", previous_sql=TOP_FIVE_SQL)
        sql = generator.generate(plan, schema_map, "org_a").sql
        assert sql.endswith("ORDER BY created_at DESC LIMIT 5")

    def test_unknown_edit_rebuilds(self, generator, schema_map):
        plan = _plan("show VIP customers", edit_instruction="show VIP customers", previous_sql=TOP_FIVE_SQL)
        generated = generator.generate(plan, schema_map, "org_a")

        assert generated.mode == "template"
        assert "(c.total_spent > 500)" in generated.sql


# ============================================================================
# LLM generation
# ============================================================================

class TestLLMGeneration:
    def test_fenced_sql_is_extracted(self):
        assert extract_sql("```sql\nSELECT 1;\n```") == "SELECT 1"
        assert extract_sql("SELECT 1 ;  ") == "SELECT 1"

    def test_missing_tenant_filter_is_added(self, schema_map):
        llm = _fake_llm("```sql\nSELECT first_name FROM ecom_customers LIMIT 5;\n```")
        generated = SQLGenerator(use_llm=True, llm=llm).generate(_plan("first names", expected_count=5), schema_map, "org_a")

        assert generated.sql == "SELECT first_name FROM ecom_customers WHERE ecom_customers.org_id = 'org_a' LIMIT 5"
        assert generated.mode == "llm_new"
        assert llm.calls[0][0] == "generator"

    def test_new_prompt_carries_tenant_and_count(self, schema_map):
        llm = _fake_llm("SELECT * FROM ecom_customers c WHERE c.org_id = 'org_a' LIMIT 5")
        SQLGenerator(use_llm=True, llm=llm).generate(
            _plan("top 5 customers by spend", expected_count=5), schema_map, "org_a"
        )

        system, user = llm.calls[0][1]
        assert "org_id = 'org_a'" in system["content"]
        assert "use LIMIT 5" in system["content"]
        assert "Table: ecom_customers" in system["content"]
        assert user["content"] == "top 5 customers by spend"

    def test_wrong_tenant_literal_is_rewritten(self, schema_map):
        llm = _fake_llm("SELECT * FROM ecom_customers c WHERE c.org_id = 'org_b' LIMIT 5")
        sql = SQLGenerator(use_llm=True, llm=llm).generate(_plan("customers"), schema_map, "org_a").sql
        assert sql == "SELECT * FROM ecom_customers c WHERE c.org_id = 'org_a' LIMIT 5"

    def test_edit_mode(self, schema_map):
        llm = _fake_llm(TOP_FIVE_SQL)
        plan = _plan("top 5 customers by spend", expected_count=5).with_retry_hint(
            "Change the LIMIT to 5.", TOP_FIVE_SQL.replace("LIMIT 5", "LIMIT 1")
        )
        generated = SQLGenerator(use_llm=True, llm=llm).generate(plan, schema_map, "org_a")

        assert generated.mode == "llm_edit"
        assert "Previous SQL:" in llm.calls[0][1][1]["content"]
        assert generated.sql == TOP_FIVE_SQL

    @pytest.mark.parametrize(
        "response",
        [
            "DELETE FROM ecom_customers WHERE org_id = 'org_a'",
            "SELECT * FROM ecom_customers c WHERE c.org_id = 'org_a'; DROP TABLE ecom_customers",
            "SELECT * FROM read_csv('/etc/passwd')",
            "",
        ],
        ids=["delete", "stacked", "file-reader", "empty"],
    )
    def test_unsafe_model_output_is_rejected(self, schema_map, response):
        generator = SQLGenerator(use_llm=True, llm=_fake_llm(response))
        with pytest.raises(GenerationError):
            generator.generate(_plan("customers"), schema_map, "org_a")

    def test_model_failure_falls_back_to_template(self, schema_map):
        llm = _fake_llm(RuntimeError("connection refused"))
        plan = _plan("top 5 customers by spend", expected_count=5)
        generated = SQLGenerator(use_llm=True, llm=llm).generate(plan, schema_map, "org_a")

        assert generated.mode == "template"
        assert generated.sql == TOP_FIVE_SQL


# ============================================================================
# Unusable plans
# ============================================================================

class TestGenerationErrors:
    def test_ambiguous_plan(self, generator, schema_map):
        plan = QueryPlan(intent="show campaigns and deals", ambiguous=True)
        with pytest.raises(GenerationError):
            generator.generate(plan, schema_map, "org_a")

    def test_plan_without_tables(self, generator, schema_map):
        with pytest.raises(GenerationError):
            generator.generate(QueryPlan(intent="something"), schema_map, "org_a")

    @pytest.mark.parametrize("tenant_id", ["", "org a", "org_a' OR '1'='1"])
    def test_invalid_tenant(self, generator, schema_map, tenant_id):
        with pytest.raises(GenerationError):
            generator.generate(_plan("customers"), schema_map, tenant_id)
