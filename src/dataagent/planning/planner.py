"""Query planner: message + conversation state + Schema Map → QueryPlan.

Planning order:
1. A clarification answer (explicit domain) short-circuits classification.
2. Regex fast paths (refinement, pronoun follow-up, single-domain question).
3. LLM classification (planner role, JSON output).
4. Deterministic fallback from the semantic layer when the LLM is off or fails.

Every plan is then grounded against the Schema Map: tables the database does
not have are dropped, and a plan left without tables becomes a clarification.
"""

import json
import logging
import re
from typing import Any, Callable

from pydantic import ValidationError

from dataagent.catalog.schema_map import SchemaMap
from dataagent.errors import LLMUnavailable
from dataagent.llm.ollama_client import parse_json_response
from dataagent.llm.router import call_llm, llm_enabled
from dataagent.planning.ambiguity import build_structured_clarification
from dataagent.planning.conversation import ConversationState
from dataagent.planning.followups import (
    FOLLOW_UP_PRONOUNS,
    classify_followup,
    resolve_references,
    score_domains,
)
from dataagent.planning.schema import QueryPlan
from dataagent.semantic.layer import (
    DEFAULT_SEMANTIC_LAYER,
    SemanticLayer,
    domain_for_question,
    find_term_matches,
    score_question_domains,
)

logger = logging.getLogger(__name__)

MAX_PLAN_TABLES = 3

_PLAN_DOMAINS = ("ecommerce", "crm", "campaigns", "behavioral", "identity", "all")


PLANNER_SYSTEM_PROMPT = """You are a query planner for a business data platform. Classify the user's question and build a query plan.

## Available Data Domains
{domains}
{terms}{session}
## Output
Return a JSON object with:
1. "turn_type": "new" for a fresh question, "follow_up" when it refers to prior results
   ("their", "those", "same", "sort by", "only show"), "clarification" when it cannot be answered without asking.
2. "intent": what the user wants, in one sentence.
3. "domain": one of the domains above, or "all" if it spans several.
4. "ambiguous": true ONLY when a generic term maps to several domains and the answer would change the query.
   Most questions are NOT ambiguous.
5. "candidate_domains": when ambiguous, the possible domains.
6. "needs_clarification": when ambiguous, a short conversational clarifying question.
7. "tables_needed": tables that will appear in FROM/JOIN.
8. "edit_instruction": for follow-ups that modify the previous query, the SQL edit needed.

## Rules
- Be decisive. If the domain is clearly ecommerce or clearly CRM, set it.
- Only list tables from the schema.

Respond with ONLY a valid JSON object. No markdown, no explanation."""


# =============================================================================
# Phrase extraction
# =============================================================================

_TOP_N = re.compile(r"\b(?:top|first|last|bottom|best|worst)\s+(\d+)\b")
_N_ENTITIES = re.compile(
    r"\b(\d+)\s+(?:customers?|orders?|deals?|contacts?|companies?|products?|campaigns?|people|results?|segments?)\b"
)
_SHOW_N = re.compile(r"\b(?:show|give|list|find|get)\s+(?:me\s+)?(\d+)\b")

_CHART_WORDS = ("chart", "graph", "plot", "visuali", "compare visually")
_COMPARE_WORDS = ("compare", "comparison", "versus", " vs ", " vs.", "side by side", "side-by-side", "compared to", "relative to")
_TABLE_WORDS = ("table", "spreadsheet", "grid", "list all", "show all", "breakdown", "break down", "itemize")
_DETAIL_WORDS = ("detail", "tell me about", "everything about", "profile", "deep dive", "drill into")
_RANKING = re.compile(r"\b(?:top|best|worst|highest|lowest|biggest|largest|most|least|rank(?:ed|ing)?)\b")


def extract_expected_count(question: str) -> int | None:
    """Row bound implied by phrasing: "top 5", "10 customers", "show me 3"."""
    lower = question.lower()
    for pattern in (_TOP_N, _N_ENTITIES, _SHOW_N):
        match = pattern.search(lower)
        if match:
            value = int(match.group(1))
            return value if value > 0 else None
    return None


def extract_output_template(question: str, expected_count: int | None = None) -> str:
    """Presentation override implied by wording, or "auto"."""
    lower = f" {question.lower()} "
    if any(word in lower for word in _CHART_WORDS) or any(word in lower for word in _COMPARE_WORDS):
        return "chart"
    if any(word in lower for word in _TABLE_WORDS):
        return "table"
    if any(word in lower for word in _DETAIL_WORDS):
        return "profile"
    if expected_count and expected_count > 1 and _RANKING.search(lower):
        return "ranked_list"
    return "auto"


# =============================================================================
# Planner
# =============================================================================

class QueryPlanner:
    """Builds a ``QueryPlan`` for each turn.

    Stateless apart from configuration; conversation state is passed in.
    """

    def __init__(
        self,
        layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER,
        *,
        use_llm: bool | None = None,
        llm: Callable[..., str] = call_llm,
    ):
        self.layer = layer
        self.use_llm = use_llm
        self._llm = llm

    @property
    def llm_active(self) -> bool:
        return llm_enabled() if self.use_llm is None else self.use_llm

    def plan(
        self,
        question: str,
        state: ConversationState,
        schema_map: SchemaMap,
        *,
        domain_hint: str | None = None,
    ) -> QueryPlan:
        """Plan one turn.

        Args:
            question: The user's message
            state: This conversation's state (read only here)
            schema_map: Current Schema Map for the tenant
            domain_hint: Domain picked in answer to a clarifying question

        Returns:
            A grounded QueryPlan; ambiguous plans carry a clarification
        """
        expected_count = extract_expected_count(question)
        template = extract_output_template(question, expected_count)

        if domain_hint:
            plan = self._plan_for_domain(question, domain_hint, schema_map)
            source = "domain_hint"
        else:
            plan = self._quick_plan(question, state, schema_map)
            source = "fast_path"
            if plan is None and self.llm_active:
                plan = self._llm_plan(question, state, schema_map)
                source = "llm"
            if plan is None:
                plan = self._fallback_plan(question, schema_map)
                source = "fallback"

        plan = self._ground(plan, schema_map)
        if plan.expected_count is None and expected_count is not None:
            plan.expected_count = expected_count
        if plan.output_template in (None, "auto"):
            plan.output_template = template  # type: ignore[assignment]
        if plan.ambiguous and plan.clarification is None:
            plan.clarification = build_structured_clarification(plan, self.layer)

        logger.info(
            "Planned turn: source=%s turn_type=%s domain=%s tables=%s ambiguous=%s expected_count=%s",
            source,
            plan.turn_type,
            plan.domain,
            plan.tables_needed,
            plan.ambiguous,
            plan.expected_count,
        )
        return plan

    # -------------------------------------------------------------------------
    # Fast paths
    # -------------------------------------------------------------------------

    def _quick_plan(self, question: str, state: ConversationState, schema_map: SchemaMap) -> QueryPlan | None:
        classification = classify_followup(question, state)
        last = state.last_turn

        if classification["is_followup"] and last is not None:
            kind = classification["type"]
            if kind == "refinement":
                return QueryPlan(
                    turn_type="follow_up",
                    intent=question,
                    domain=_as_plan_domain(last.domain),
                    tables_needed=list(last.tables),
                    edit_instruction=question,
                    previous_sql=last.sql,
                )

            references = resolve_references(question, state, classification["reference"])
            if kind == "pivot":
                domain = classification["domain"]
                return QueryPlan(
                    turn_type="follow_up",
                    intent=question,
                    domain=_as_plan_domain(domain),
                    tables_needed=self._tables_for_domain(domain, question, schema_map),
                    resolved_references=references,
                )
            return QueryPlan(
                turn_type="follow_up",
                intent=question,
                domain=_as_plan_domain(last.domain),
                tables_needed=list(last.tables),
                resolved_references=references,
                edit_instruction=question,
                previous_sql=last.sql,
            )

        matched = score_domains(question)
        if len(matched) == 1:
            domain = next(iter(matched))
            return QueryPlan(
                turn_type="new",
                intent=question,
                domain=_as_plan_domain(domain),
                tables_needed=self._tables_for_domain(domain, question, schema_map),
            )

        return None

    def _plan_for_domain(self, question: str, domain: str, schema_map: SchemaMap) -> QueryPlan:
        if domain == "all":
            tables = self._tables_for_question(question, schema_map)
        else:
            tables = self._tables_for_domain(domain, question, schema_map)
        return QueryPlan(
            turn_type="new",
            intent=question,
            domain=_as_plan_domain(domain),
            tables_needed=tables,
        )

    # -------------------------------------------------------------------------
    # LLM classification
    # -------------------------------------------------------------------------

    def _build_prompt(self, state: ConversationState, schema_map: SchemaMap, question: str) -> str:
        domains = "\n".join(
            f"- {d.value}: {self.layer.domains[d.value].description}" if d.value in self.layer.domains else f"- {d.value}"
            for d in schema_map.get_available_domains()
        )
        matches = find_term_matches(question, self.layer)
        terms = ""
        if matches:
            listed = "\n".join(f'- "{m.term}" -> {m.description} (SQL: {m.sql_condition})' for m in matches)
            terms = f"\n## Known Term Definitions\n{listed}\n"
        summary = state.context_summary()
        session = f"\n## Conversation Context\n{summary}\n" if summary else ""
        schema = schema_map.describe()
        prompt = PLANNER_SYSTEM_PROMPT.format(domains=domains or "- (none)", terms=terms, session=session)
        return f"{prompt}\n\n## Schema\n{schema}"

    def _llm_plan(self, question: str, state: ConversationState, schema_map: SchemaMap) -> QueryPlan | None:
        messages = [
            {"role": "system", "content": self._build_prompt(state, schema_map, question)},
            {"role": "user", "content": question},
        ]
        try:
            response = self._llm(messages, role="planner", max_tokens=1024)
            parsed = parse_json_response(response)
        except LLMUnavailable:
            return None
        except json.JSONDecodeError as e:
            logger.warning("Planner returned unparseable output: %s", e)
            return None
        except Exception as e:  # provider SDKs raise their own error types
            logger.warning("Planner LLM call failed: %s", e)
            return None

        return self._plan_from_llm(question, parsed, state, schema_map)

    def _plan_from_llm(
        self,
        question: str,
        parsed: dict[str, Any],
        state: ConversationState,
        schema_map: SchemaMap,
    ) -> QueryPlan | None:
        turn_type = str(parsed.get("turn_type") or "new")
        if turn_type in ("pivot", "refinement"):
            turn_type = "follow_up"
        if turn_type not in ("new", "follow_up", "clarification"):
            turn_type = "new"

        domain = parsed.get("domain")
        if domain not in _PLAN_DOMAINS:
            domain = domain_for_question(question, self.layer)

        ambiguous = parsed.get("ambiguous") is True or turn_type == "clarification"
        last = state.last_turn

        fields: dict[str, Any] = {
            "turn_type": turn_type,
            "intent": parsed.get("intent") or question,
            "domain": domain,
            "ambiguous": ambiguous,
            "tables_needed": [t for t in parsed.get("tables_needed") or [] if isinstance(t, str)],
            "candidate_domains": [d for d in parsed.get("candidate_domains") or [] if isinstance(d, str)],
        }

        if turn_type == "follow_up" and last is not None:
            fields["resolved_references"] = resolve_references(question, state, _first_reference_word(question))
            edit = parsed.get("edit_instruction")
            if edit:
                fields["edit_instruction"] = str(edit)
                fields["previous_sql"] = last.sql

        try:
            plan = QueryPlan(**fields)
        except ValidationError as e:
            logger.warning("Planner output failed validation: %s", e)
            return None

        if plan.ambiguous:
            plan.clarification = build_structured_clarification(
                plan, self.layer, question=parsed.get("needs_clarification") or None
            )
        return plan

    # -------------------------------------------------------------------------
    # Fallback
    # -------------------------------------------------------------------------

    def _fallback_plan(self, question: str, schema_map: SchemaMap) -> QueryPlan:
        """Deterministic plan from semantic-layer vocabulary."""
        domain = domain_for_question(question, self.layer)
        if domain != "all":
            return QueryPlan(
                turn_type="new",
                intent=question,
                domain=_as_plan_domain(domain),
                tables_needed=self._tables_for_domain(domain, question, schema_map),
            )

        candidates = [d for d, _ in sorted(score_question_domains(question, self.layer).items(), key=lambda kv: -kv[1])]
        return QueryPlan(
            turn_type="clarification",
            intent=question,
            domain="all",
            ambiguous=True,
            candidate_domains=candidates,
        )

    # -------------------------------------------------------------------------
    # Table selection and grounding
    # -------------------------------------------------------------------------

    def _tables_for_domain(self, domain: str, question: str, schema_map: SchemaMap) -> list[str]:
        """Tables for a domain: term-matched tables first, then the domain's own."""
        ordered: list[str] = []
        for match in find_term_matches(question, self.layer):
            if self.layer.domain_for_table(match.table) == domain:
                ordered.append(match.table)

        config = self.layer.domains.get(domain)
        if config is not None:
            ordered.extend(config.tables)
        else:
            ordered.extend(t.name for t in schema_map.get_tables_for_domain(domain))

        return _present_tables(ordered, schema_map)[:MAX_PLAN_TABLES]

    def _tables_for_question(self, question: str, schema_map: SchemaMap) -> list[str]:
        ordered = [m.table for m in find_term_matches(question, self.layer)]
        ordered.extend(config.primary_table for config in self.layer.domains.values())
        return _present_tables(ordered, schema_map)[:MAX_PLAN_TABLES]

    def _ground(self, plan: QueryPlan, schema_map: SchemaMap) -> QueryPlan:
        """Drop unknown tables; no tables left means the plan is ambiguous."""
        if plan.ambiguous:
            return plan

        present = _present_tables(plan.tables_needed, schema_map)
        dropped = [t for t in plan.tables_needed if t not in present]
        if dropped:
            logger.info("Dropping tables not in schema: %s", dropped)
        plan.tables_needed = present

        if not present:
            plan.ambiguous = True
            plan.turn_type = "clarification"
            plan.candidate_domains = []
        return plan


def _present_tables(tables: list[str], schema_map: SchemaMap) -> list[str]:
    seen: list[str] = []
    for table in tables:
        if table in schema_map and table not in seen:
            seen.append(table)
    return seen


def _as_plan_domain(domain: str | None) -> str:
    return domain if domain in _PLAN_DOMAINS else "all"


def _first_reference_word(question: str) -> str | None:
    match = FOLLOW_UP_PRONOUNS.search(question.lower())
    return match.group(0) if match else None
