"""Tests for the query planner.

Validates:
- Row-bound and presentation phrasing extraction
- Deterministic planning (fast paths and semantic-layer fallback)
- Ambiguous questions become clarifications with selectable options
- LLM plans are grounded against the Schema Map, and LLM failures fall back
"""

import json

import pytest

from dataagent.errors import LLMUnavailable
from dataagent.planning.conversation import ConversationState, QueryTurn
from dataagent.planning.planner import QueryPlanner, extract_expected_count, extract_output_template

LAST_SQL = (
    "SELECT c.* FROM ecom_customers c WHERE c.org_id = 'org_a' "
    "ORDER BY c.total_spent DESC NULLS LAST LIMIT 5"
)


# ============================================================================
# Helper Functions
# ============================================================================

def _state(with_turn: bool = False) -> ConversationState:
    state = ConversationState(conversation_id="c1", tenant_id="org_a")
    if with_turn:
        state.record_turn(
            QueryTurn(
                question="top 5 customers by spend",
                sql=LAST_SQL,
                tables=["ecom_customers"],
                domain="ecommerce",
                entity_ids=["id-1", "id-2"],
                result_values={"state": ["NY", "CA"]},
            )
        )
    return state


def _fake_llm(payload):
    calls = []

    def llm(messages, role="planner", **kwargs):
        calls.append((role, messages))
        if isinstance(payload, Exception):
            raise payload
        return payload if isinstance(payload, str) else json.dumps(payload)

    llm.calls = calls
    return llm


# ============================================================================
# Phrase extraction
# ============================================================================

@pytest.mark.parametrize(
    "question,expected",
    [
        ("top 5 customers by spend", 5),
        ("show me 3 orders", 3),
        ("list 10 deals", 10),
        ("first 2 campaigns", 2),
        ("list customers", None),
        ("top 0 customers", None),
    ],
)
def test_expected_count(question, expected):
    assert extract_expected_count(question) == expected


@pytest.mark.parametrize(
    "question,count,expected",
    [
        ("chart revenue by month", None, "chart"),
        ("compare deals vs campaigns", None, "chart"),
        ("show all orders", None, "table"),
        ("tell me about Alice Smith", None, "profile"),
        ("top 5 customers by spend", 5, "ranked_list"),
        ("how many orders", None, "auto"),
    ],
)
def test_output_template(question, count, expected):
    assert extract_output_template(question, count) == expected


# ============================================================================
# Deterministic planning
# ============================================================================

class TestDeterministicPlanning:
    def test_single_domain_question(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan("top 5 customers by spend", _state(), schema_map)

        assert plan.turn_type == "new"
        assert plan.ambiguous is False
        assert plan.domain == "ecommerce"
        assert plan.tables_needed[0] == "ecom_customers"
        assert plan.expected_count == 5
        assert plan.output_template == "ranked_list"

    def test_semantic_fallback(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan("how many customers do we have", _state(), schema_map)

        assert plan.domain == "ecommerce"
        assert plan.tables_needed[0] == "ecom_customers"

    def test_term_tables_come_first(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan("which customers are at risk of churn", _state(), schema_map)

        assert plan.domain == "behavioral"
        assert plan.tables_needed[0] == "customer_behavioral_profiles"

    def test_ambiguous_question_gets_options(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan("show campaigns and deals", _state(), schema_map)

        assert plan.ambiguous is True
        assert plan.turn_type == "clarification"
        assert plan.clarification.reason == "domain_ambiguous"
        assert [o.value for o in plan.clarification.options] == ["all", "crm", "campaigns"]
        assert plan.clarification.options[0].label == "All of the above"

    def test_no_vocabulary_gets_freeform_question(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan("hello there", _state(), schema_map)

        assert plan.ambiguous is True
        assert plan.clarification.reason == "no_tables"
        assert plan.clarification.options == []
        assert plan.clarification.allow_freeform is True

    def test_domain_hint_short_circuits(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan(
            "show campaigns and deals", _state(), schema_map, domain_hint="crm"
        )

        assert plan.ambiguous is False
        assert plan.domain == "crm"
        assert plan.tables_needed == ["crm_contacts", "crm_companies", "crm_deals"]

    def test_all_domains_hint(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan(
            "show campaigns and deals", _state(), schema_map, domain_hint="all"
        )

        assert plan.domain == "all"
        assert plan.tables_needed == ["ecom_customers", "crm_contacts", "email_campaigns"]


class TestFollowUps:
    def test_refinement_edits_previous_sql(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan("sort by created_at", _state(with_turn=True), schema_map)

        assert plan.turn_type == "follow_up"
        assert plan.previous_sql == LAST_SQL
        assert plan.edit_instruction == "sort by created_at"
        assert plan.tables_needed == ["ecom_customers"]
        assert plan.is_edit

    def test_pronoun_resolves_to_prior_values(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan("list those states", _state(with_turn=True), schema_map)

        assert plan.turn_type == "follow_up"
        assert plan.resolved_references == {"those": ["NY", "CA"]}

    def test_pivot_changes_domain(self, schema_map):
        plan = QueryPlanner(use_llm=False).plan(
            "what deals do those customers have", _state(with_turn=True), schema_map
        )

        assert plan.turn_type == "follow_up"
        assert plan.domain == "crm"
        assert "crm_deals" in plan.tables_needed
        assert plan.previous_sql is None
        assert plan.resolved_references == {"those": ["id-1", "id-2"]}


# ============================================================================
# LLM planning
# ============================================================================

class TestLLMPlanning:
    def test_llm_plan_is_grounded(self, schema_map):
        llm = _fake_llm({
            "turn_type": "new",
            "intent": "Deals tied to campaign recipients",
            "domain": "crm",
            "ambiguous": False,
            "tables_needed": ["crm_deals", "not_a_table"],
        })
        plan = QueryPlanner(use_llm=True, llm=llm).plan("show campaigns and deals", _state(), schema_map)

        assert plan.domain == "crm"
        assert plan.tables_needed == ["crm_deals"]
        assert plan.intent == "Deals tied to campaign recipients"
        assert llm.calls[0][0] == "planner"

    def test_prompt_includes_schema_and_terms(self, schema_map):
        llm = _fake_llm({"turn_type": "new", "intent": "x", "domain": "ecommerce", "tables_needed": ["ecom_customers"]})
        QueryPlanner(use_llm=True, llm=llm).plan("show VIP customers, campaigns and deals", _state(), schema_map)

        system = llm.calls[0][1][0]["content"]
        assert "Table: ecom_customers" in system
        assert '"VIP" -> Customers with total spend above $500' in system

    def test_fast_path_skips_llm(self, schema_map):
        llm = _fake_llm({})
        QueryPlanner(use_llm=True, llm=llm).plan("top 5 customers by spend", _state(), schema_map)
        assert llm.calls == []

    def test_llm_ambiguity_uses_its_question(self, schema_map):
        llm = _fake_llm({
            "turn_type": "clarification",
            "intent": "Show customer data",
            "domain": "all",
            "ambiguous": True,
            "candidate_domains": ["ecommerce", "crm"],
            "needs_clarification": "Do you mean store customers or CRM contacts?",
        })
        plan = QueryPlanner(use_llm=True, llm=llm).plan("show campaigns and deals", _state(), schema_map)

        assert plan.ambiguous is True
        assert plan.clarification.question == "Do you mean store customers or CRM contacts?"
        assert [o.value for o in plan.clarification.options] == ["all", "ecommerce", "crm"]

    def test_unknown_tables_become_clarification(self, schema_map):
        llm = _fake_llm({"turn_type": "new", "intent": "x", "domain": "crm", "tables_needed": ["nope"]})
        plan = QueryPlanner(use_llm=True, llm=llm).plan("show campaigns and deals", _state(), schema_map)

        assert plan.ambiguous is True
        assert plan.clarification.reason == "no_tables"

    @pytest.mark.parametrize(
        "payload",
        [RuntimeError("provider down"), LLMUnavailable("none"), "not json at all", {"intent": 5, "tables_needed": "x"}],
        ids=["error", "unavailable", "unparseable", "invalid"],
    )
    def test_llm_failures_fall_back(self, schema_map, payload):
        llm = _fake_llm(payload)
        plan = QueryPlanner(use_llm=True, llm=llm).plan("show campaigns and deals", _state(), schema_map)

        assert len(llm.calls) == 1
        # Same outcome as the deterministic planner
        assert plan.ambiguous is True
        assert [o.value for o in plan.clarification.options] == ["all", "crm", "campaigns"]

    def test_llm_follow_up_edit(self, schema_map):
        llm = _fake_llm({
            "turn_type": "refinement",
            "intent": "Same customers, newest first",
            "domain": "ecommerce",
            "tables_needed": ["ecom_customers"],
            "edit_instruction": "ORDER BY created_at DESC",
        })
        plan = QueryPlanner(use_llm=True, llm=llm).plan(
            "now newest first please", _state(with_turn=True), schema_map
        )

        assert plan.turn_type == "follow_up"
        assert plan.previous_sql == LAST_SQL
        assert plan.edit_instruction == "ORDER BY created_at DESC"
