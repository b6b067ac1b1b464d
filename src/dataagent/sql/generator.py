"""SQL generation from a QueryPlan.

Two mechanisms share one contract (a single tenant-scoped, read-only
statement that has passed every guardrail):

- LLM-authored SQL, in new-query mode or edit mode (follow-ups and the
  Validation Gate retry edit the previous statement).
- A templated builder driven by the semantic layer, used when no model is
  configured or the model call fails.

Statements a model writes that fail the guardrails are not repaired; they
raise ``GenerationError`` and are never executed.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from dataagent.catalog.schema_map import SchemaMap, SemanticType, TableSchema
from dataagent.errors import GenerationError, LLMUnavailable
from dataagent.explain.values import is_identifier_column
from dataagent.llm.ollama_client import strip_code_fences
from dataagent.llm.router import call_llm, llm_enabled
from dataagent.planning.schema import QueryPlan
from dataagent.semantic.layer import (
    DEFAULT_SEMANTIC_LAYER,
    SemanticLayer,
    find_join_path,
    find_metric,
    find_term_matches,
)
from dataagent.sql.guardrails import (
    DEFAULT_CONFIG,
    GuardrailConfig,
    check_tenant_id,
    extract_limit,
    prepare_statement,
)

logger = logging.getLogger(__name__)

MAX_REFERENCE_VALUES = 100

# Foreign-key column names that point at an entity table
ENTITY_FK_COLUMNS = {
    "ecom_customers": ("customer_id", "ecom_customer_id"),
    "crm_contacts": ("contact_id", "crm_contact_id"),
    "crm_companies": ("company_id",),
    "crm_deals": ("deal_id",),
    "email_campaigns": ("campaign_id",),
    "segments": ("segment_id",),
}

# Preferred ranking columns when the question names none
RANKING_COLUMNS = (
    "total_spent",
    "total_price",
    "value",
    "amount",
    "orders_count",
    "engagement_score",
    "monetary_score",
)

_ASCENDING_WORDS = re.compile(r"\b(?:worst|lowest|least|bottom|smallest|fewest|oldest)\b")
_RANKING_WORDS = re.compile(r"\b(?:top|best|worst|highest|lowest|biggest|largest|most|least|bottom|rank(?:ed|ing)?)\b")
_COUNT_WORDS = re.compile(r"\b(?:how many|number of|count of|count)\b")
_GROUP_WORDS = re.compile(r"\b(?:by|per|each|for each)\s+([a-z_]+)")
_LIMIT_EDIT = re.compile(r"\b(?:limit to|top|first|only show the first|only the first|show only)\s+(\d+)\b")
_SORT_EDIT = re.compile(r"^(?:sort|order)\s+(?:it\s+)?by\s+([a-z_ ]+?)(?:\s+(asc|ascending|desc|descending))?\s*$")


@dataclass
class GeneratedSQL:
    """A guarded statement plus how it was produced."""

    sql: str
    mode: str  # llm_new | llm_edit | template | template_edit
    warnings: list[str] = field(default_factory=list)


def extract_sql(text: str) -> str:
    """Raw SQL from a model response: fences and trailing semicolon removed."""
    sql = strip_code_fences(text)
    return re.sub(r";\s*$", "", sql).strip()


def quote_literal(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


# =============================================================================
# Prompts
# =============================================================================

NEW_SQL_PROMPT = """You are a DuckDB SQL generator for a multi-tenant business platform. Generate a single SELECT query.

## CRITICAL RULES
- Every query MUST include `org_id = '{tenant_id}'` in the WHERE clause of the primary table
- Only SELECT queries; no INSERT, UPDATE, DELETE, DROP, ALTER, CREATE, TRUNCATE
- Include LIMIT (default {default_limit}; for "top N" questions ALWAYS use LIMIT N)
- Use table aliases and qualify every column when joining
- Joins between tenant tables must also match org_id
- Subqueries and CTEs filter their own tables by org_id too; a CTE must keep its org_id column
- No UNION, INTERSECT or EXCEPT
- For JSON columns use ->> for text and -> for objects
- Never add SQL comments

## EXAMPLE
-- Top customers by total spend:
SELECT c.id, c.first_name, c.last_name, c.email, c.total_spent, c.orders_count
FROM ecom_customers c
WHERE c.org_id = '{tenant_id}'
ORDER BY c.total_spent DESC
LIMIT 5"""

EDIT_SQL_PROMPT = """You are a SQL editor. You will receive a previous DuckDB query and an edit instruction. Modify the SQL to fulfill the instruction.

## CRITICAL RULES
- Keep the org_id = '{tenant_id}' filter intact
- Only modify what the instruction asks for; don't rewrite the entire query
- Keep existing JOINs, WHERE conditions and GROUP BY unless the instruction says to remove them
- If adding a new JOIN, qualify all column names
- Never add SQL comments"""


class SQLGenerator:
    """Produces one guarded statement per plan."""

    def __init__(
        self,
        layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER,
        *,
        config: GuardrailConfig | None = None,
        use_llm: bool | None = None,
        llm: Callable[..., str] = call_llm,
    ):
        self.layer = layer
        self.config = config or DEFAULT_CONFIG
        self.use_llm = use_llm
        self._llm = llm

    @property
    def llm_active(self) -> bool:
        return llm_enabled() if self.use_llm is None else self.use_llm

    def generate(
        self,
        plan: QueryPlan,
        schema_map: SchemaMap,
        tenant_id: str,
        *,
        entity_type: str | None = None,
        context_summary: str | None = None,
    ) -> GeneratedSQL:
        """Generate and guard the statement for ``plan``.

        Args:
            plan: Non-ambiguous plan with at least one table
            schema_map: Tenant's Schema Map
            tenant_id: Tenant every statement is scoped to
            entity_type: Table the previous turn's entity ids came from
            context_summary: Conversation summary for the model prompt

        Raises:
            GenerationError: If no statement can be produced or it fails the guardrails
        """
        check_tenant_id(tenant_id)
        if plan.ambiguous:
            raise GenerationError("Ambiguous plans are not executed")
        if not plan.tables_needed:
            raise GenerationError("Plan names no tables")

        raw: str | None = None
        mode = ""
        if self.llm_active:
            raw, mode = self._generate_with_llm(plan, schema_map, tenant_id, context_summary)

        if raw is None:
            if plan.is_edit:
                raw, mode = self.edit_template(plan, schema_map, tenant_id, entity_type=entity_type)
            else:
                raw = self.build_template(plan, schema_map, tenant_id, entity_type=entity_type)
                mode = "template"

        sql = prepare_statement(raw, tenant_id, self.config)
        logger.debug("Generated SQL (%s): %s", mode, sql)
        return GeneratedSQL(sql=sql, mode=mode)

    # -------------------------------------------------------------------------
    # LLM modes
    # -------------------------------------------------------------------------

    def _generate_with_llm(
        self,
        plan: QueryPlan,
        schema_map: SchemaMap,
        tenant_id: str,
        context_summary: str | None,
    ) -> tuple[str | None, str]:
        if plan.is_edit:
            system = self._edit_prompt(plan, schema_map, tenant_id)
            user = f"Edit instruction: {plan.edit_instruction}\n\nPrevious SQL:\n{plan.previous_sql}"
            mode = "llm_edit"
        else:
            system = self._new_prompt(plan, schema_map, tenant_id, context_summary)
            user = plan.intent
            mode = "llm_new"

        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        try:
            response = self._llm(messages, role="generator", max_tokens=2048)
        except LLMUnavailable:
            return None, ""
        except Exception as e:  # provider SDKs raise their own error types
            logger.warning("SQL generation LLM call failed, using templated builder: %s", e)
            return None, ""

        sql = extract_sql(response)
        if not sql:
            raise GenerationError("Model returned no SQL")
        return sql, mode

    def _context_sections(self, plan: QueryPlan, schema_map: SchemaMap) -> list[str]:
        parts = [f"\n## Database Schema\n{schema_map.describe(plan.tables_needed)}"]

        matches = find_term_matches(plan.intent, self.layer)
        if matches:
            listed = "\n".join(
                f'- "{m.term}": {m.description}\n  SQL: {m.sql_condition} (table: {m.table})' for m in matches
            )
            parts.append(f"\n## Business Term Mappings\n{listed}")

        joins: list[str] = []
        primary = plan.tables_needed[0]
        for table in plan.tables_needed[1:]:
            joins.extend(find_join_path(primary, table, self.layer))
        if joins:
            parts.append("\n## JOIN Paths\n" + "\n".join(f"- {j}" for j in joins))

        if plan.resolved_references:
            lines = []
            for ref, values in plan.resolved_references.items():
                items = values if isinstance(values, list) else [values]
                shown = ", ".join(quote_literal(v) for v in items[:10])
                more = f" ({len(items)} total)" if len(items) > 10 else ""
                lines.append(f'- "{ref}" resolves to: {shown}{more}')
            parts.append("\n## Resolved References\n" + "\n".join(lines) + "\nUse these values in WHERE/IN clauses as needed.")
        return parts

    def _new_prompt(self, plan: QueryPlan, schema_map: SchemaMap, tenant_id: str, context_summary: str | None) -> str:
        parts = [NEW_SQL_PROMPT.format(tenant_id=tenant_id, default_limit=self.config.default_limit)]
        parts.extend(self._context_sections(plan, schema_map))
        if plan.expected_count:
            parts.append(f"\nThe user expects {plan.expected_count} rows: use LIMIT {plan.expected_count}.")
        if context_summary:
            parts.append(f"\n## Conversation Context\n{context_summary}")
        parts.append("\nRespond with ONLY the SQL query. No markdown code blocks, no explanation.")
        return "\n".join(parts)

    def _edit_prompt(self, plan: QueryPlan, schema_map: SchemaMap, tenant_id: str) -> str:
        parts = [EDIT_SQL_PROMPT.format(tenant_id=tenant_id)]
        parts.extend(self._context_sections(plan, schema_map))
        parts.append("\nRespond with ONLY the modified SQL query. No markdown code blocks, no explanation.")
        return "\n".join(parts)

    # -------------------------------------------------------------------------
    # Templated builder
    # -------------------------------------------------------------------------

    def build_template(
        self,
        plan: QueryPlan,
        schema_map: SchemaMap,
        tenant_id: str,
        *,
        entity_type: str | None = None,
    ) -> str:
        """Build a statement from the plan without a model.

        Shapes: single metric aggregate, grouped count/metric, count, or a
        row listing with term filters, joins to term tables, entity filters
        and ranking order.
        """
        intent = plan.intent.lower()
        primary = schema_map.get(plan.tables_needed[0])
        if primary is None:
            raise GenerationError(f"Unknown table: {plan.tables_needed[0]}")

        metric = find_metric(intent, self.layer)
        if metric is not None and metric.table in schema_map:
            primary = schema_map.get(metric.table)

        alias = self.layer.alias_for(primary.name)
        conditions = [f"{alias}.org_id = {quote_literal(tenant_id)}"]
        joins: list[str] = []
        extra_columns: list[str] = []

        for match in find_term_matches(intent, self.layer):
            if match.is_metric:
                continue
            if match.table == primary.name:
                conditions.append(_qualify(match.sql_condition, alias))
                continue
            if match.table not in plan.tables_needed or metric is not None:
                continue
            path = find_join_path(primary.name, match.table, self.layer)
            if not path or not all(t in schema_map for t in _join_tables(path)):
                continue
            for clause in path:
                if clause not in joins:
                    joins.append(clause)
            target_alias = self.layer.alias_for(match.table)
            conditions.append(_qualify(match.sql_condition, target_alias))
            extra_columns.extend(_extra_columns(schema_map.get(match.table), primary, target_alias))

        entity_filter = self._entity_filter(plan, primary, alias, entity_type)
        if entity_filter:
            conditions.append(entity_filter)

        where = " AND ".join(conditions)
        from_clause = f"FROM {primary.name} {alias}" + "".join(f" {j}" for j in joins)
        limit = plan.expected_count or self.config.default_limit
        group_column = _group_column(intent, primary)

        if metric is not None and metric.table == primary.name:
            if group_column:
                return (
                    f"SELECT {alias}.{group_column}, {metric.sql_expression} AS {metric.name} {from_clause} "
                    f"WHERE {where} GROUP BY {alias}.{group_column} ORDER BY {metric.name} DESC LIMIT {limit}"
                )
            return f"SELECT {metric.sql_expression} AS {metric.name} {from_clause} WHERE {where}"

        if group_column:
            return (
                f"SELECT {alias}.{group_column}, COUNT(*) AS record_count {from_clause} "
                f"WHERE {where} GROUP BY {alias}.{group_column} ORDER BY record_count DESC LIMIT {limit}"
            )

        if _COUNT_WORDS.search(intent):
            return f"SELECT COUNT(*) AS {_entity_label(primary.name)}_count {from_clause} WHERE {where}"

        select = ", ".join([f"{alias}.*"] + extra_columns)
        sql = f"SELECT {select} {from_clause} WHERE {where}"

        order = _order_clause(intent, primary, alias)
        if order:
            sql += f" ORDER BY {order}"
        return f"{sql} LIMIT {limit}"

    def edit_template(
        self,
        plan: QueryPlan,
        schema_map: SchemaMap,
        tenant_id: str,
        *,
        entity_type: str | None = None,
    ) -> tuple[str, str]:
        """Apply a deterministic edit to ``plan.previous_sql``.

        Handles limit changes (including the under-fetch retry) and sort
        changes; anything else rebuilds the statement from the plan.
        """
        previous = (plan.previous_sql or "").strip().rstrip(";")
        instruction = (plan.edit_instruction or "").lower().strip()

        new_limit = None
        limit_match = _LIMIT_EDIT.search(instruction)
        if limit_match:
            new_limit = int(limit_match.group(1))
        elif plan.expected_count:
            current = extract_limit(previous)
            if current is not None and current < plan.expected_count:
                new_limit = plan.expected_count
        if new_limit:
            return _set_limit(previous, new_limit), "template_edit"

        sort_match = _SORT_EDIT.search(instruction)
        if sort_match:
            column = _find_column(sort_match.group(1), [schema_map.get(t) for t in plan.tables_needed])
            if column:
                direction = "ASC" if (sort_match.group(2) or "").startswith("asc") else "DESC"
                return _set_order(previous, column, direction), "template_edit"

        return self.build_template(plan, schema_map, tenant_id, entity_type=entity_type), "template"

    def _entity_filter(
        self,
        plan: QueryPlan,
        primary: TableSchema,
        alias: str,
        entity_type: str | None,
    ) -> str | None:
        """IN-filter for ids carried from the previous turn."""
        ids = plan.resolved_references.get("_active_entities")
        if not isinstance(ids, list) or not ids:
            return None

        column = None
        if entity_type == primary.name or entity_type is None:
            column = "id" if primary.column("id") else None
        if column is None and entity_type:
            for rel in primary.relationships:
                if rel.target_table == entity_type:
                    column = rel.source_column
                    break
        if column is None and entity_type:
            for candidate in ENTITY_FK_COLUMNS.get(entity_type, ()):
                if primary.column(candidate):
                    column = candidate
                    break
        if column is None:
            return None

        values = ", ".join(quote_literal(v) for v in ids[:MAX_REFERENCE_VALUES])
        return f"{alias}.{column} IN ({values})"


# =============================================================================
# Builder helpers
# =============================================================================

def _qualify(condition: str, alias: str) -> str:
    """Prefix the leading column of a term condition with a table alias."""
    return "(" + re.sub(r"^\s*([A-Za-z_]\w*)", rf"{alias}.\1", condition, count=1) + ")"


def _join_tables(path: list[str]) -> list[str]:
    return [m.group(1) for clause in path for m in [re.match(r"JOIN\s+(\w+)", clause)] if m]


def _extra_columns(table: TableSchema | None, primary: TableSchema, alias: str) -> list[str]:
    if table is None:
        return []
    return [
        f"{alias}.{col.name}"
        for col in table.columns
        if not is_identifier_column(col.name) and primary.column(col.name) is None
    ]


def _entity_label(table_name: str) -> str:
    return re.sub(r"^(ecom|crm|email)_", "", table_name)


_STOP_WORDS = {"show", "the", "and", "with", "who", "what", "which", "are", "our", "have", "list", "give", "find", "get"}


def _words(text: str) -> list[str]:
    return [
        w
        for w in re.findall(r"[a-z]+", text.lower())
        if len(w) >= 4 and w not in _STOP_WORDS and not _RANKING_WORDS.fullmatch(w)
    ]


def _numeric_columns(table: TableSchema) -> list[str]:
    return [
        col.name
        for col in table.columns
        if col.type in (SemanticType.NUMERIC, SemanticType.INTEGER) and not is_identifier_column(col.name)
    ]


def _order_clause(intent: str, table: TableSchema, alias: str) -> str | None:
    """ORDER BY for ranking wording: a numeric column named or implied by the intent."""
    if not _RANKING_WORDS.search(intent):
        return None

    direction = "ASC" if _ASCENDING_WORDS.search(intent) else "DESC"
    numeric = _numeric_columns(table)
    words = _words(intent)

    for name in numeric:
        if any(word[:4] in name for word in words):
            return f"{alias}.{name} {direction} NULLS LAST"
    for name in RANKING_COLUMNS:
        if name in numeric:
            return f"{alias}.{name} {direction} NULLS LAST"
    if numeric:
        return f"{alias}.{numeric[0]} {direction} NULLS LAST"
    if table.column("created_at"):
        return f"{alias}.created_at DESC"
    return None


def _group_column(intent: str, table: TableSchema) -> str | None:
    """Text-like column named after "by"/"per"/"each", if any."""
    for match in _GROUP_WORDS.finditer(intent):
        word = match.group(1)
        if len(word) < 3:
            continue
        for col in table.columns:
            if col.type not in (SemanticType.TEXT, SemanticType.BOOLEAN):
                continue
            if is_identifier_column(col.name):
                continue
            if col.name == word or word in col.name.split("_") or col.name.startswith(word):
                return col.name
    return None


def _find_column(phrase: str, tables: list[TableSchema | None]) -> str | None:
    target = phrase.strip().replace(" ", "_")
    for table in tables:
        if table is None:
            continue
        for col in table.columns:
            if col.name == target:
                return col.name
        for col in table.columns:
            if target in col.name or col.name in target:
                return col.name
    return None


def _set_limit(sql: str, limit: int) -> str:
    trailing = re.search(r"\bLIMIT\s+\d+(\s+OFFSET\s+\d+)?\s*$", sql, re.IGNORECASE)
    if trailing:
        return f"{sql[:trailing.start()]}LIMIT {limit}{trailing.group(1) or ''}"
    return f"{sql} LIMIT {limit}"


def _set_order(sql: str, column: str, direction: str) -> str:
    body = re.sub(r"\s+LIMIT\s+\d+(\s+OFFSET\s+\d+)?\s*$", "", sql, flags=re.IGNORECASE)
    limit = sql[len(body):]
    body = re.sub(r"\s+ORDER\s+BY\s+.*$", "", body, flags=re.IGNORECASE | re.DOTALL)
    return f"{body} ORDER BY {column} {direction}{limit}"
