"""Query executor: plan → one guarded statement → QueryResult.

Every failure path (generation error, static rejection, database error,
timeout) comes back as a failed ``QueryResult``; ``execute`` never raises
into the caller.
"""

import logging
import re
import time
from pathlib import Path
from typing import Any

from dataagent.catalog.schema_map import SchemaMap
from dataagent.errors import ExecutionError, GenerationError
from dataagent.planning.schema import QueryPlan
from dataagent.results import FieldConfidence, QueryResult
from dataagent.semantic.layer import DEFAULT_SEMANTIC_LAYER, SemanticLayer, field_confidence
from dataagent.sql.generator import SQLGenerator
from dataagent.sql.guardrails import GuardrailConfig
from dataagent.sql.safe_executor import SafeSQLExecutor

logger = logging.getLogger(__name__)

TIMEOUT_ERROR_KIND = "timeout"

_TABLE_REFERENCE = re.compile(r"\b(?:FROM|JOIN)\s+\"?([A-Za-z_]\w*)\"?", re.IGNORECASE)


def referenced_tables(sql: str) -> list[str]:
    """Table names that follow FROM or JOIN, in order."""
    seen: list[str] = []
    for name in _TABLE_REFERENCE.findall(sql):
        if name not in seen:
            seen.append(name)
    return seen


def tag_field_confidence(
    tables: list[str],
    rows: list[dict[str, Any]],
    layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER,
) -> list[FieldConfidence]:
    """Provenance for columns that carry at least one value."""
    if not rows:
        return []
    columns = [c for c in rows[0] if any(row.get(c) is not None for row in rows)]
    return field_confidence(tables, columns, layer)


class QueryExecutor:
    """Generates, guards and runs the statement for a plan."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        config: GuardrailConfig | None = None,
        generator: SQLGenerator | None = None,
        layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER,
    ):
        self.config = config or GuardrailConfig()
        self.layer = layer
        self.generator = generator or SQLGenerator(layer, config=self.config)
        self.sql_executor = SafeSQLExecutor(db_path, config=self.config)

    def execute(
        self,
        plan: QueryPlan,
        schema_map: SchemaMap,
        tenant_id: str,
        *,
        entity_type: str | None = None,
        context_summary: str | None = None,
    ) -> QueryResult:
        """Run ``plan`` for ``tenant_id`` and tag field provenance."""
        start = time.perf_counter()

        try:
            generated = self.generator.generate(
                plan,
                schema_map,
                tenant_id,
                entity_type=entity_type,
                context_summary=context_summary,
            )
        except GenerationError as e:
            logger.warning("SQL generation failed: %s", e)
            return QueryResult.failure(
                str(e),
                error_kind=GenerationError.kind,
                sql=e.details.get("sql", ""),
                execution_time_ms=_elapsed_ms(start),
            )

        outcome = self.sql_executor.execute(generated.sql, tenant_id=tenant_id)

        if outcome.rejected:
            return QueryResult.failure(
                outcome.error or "Statement rejected",
                error_kind=GenerationError.kind,
                sql=generated.sql,
                execution_time_ms=_elapsed_ms(start),
            )
        if not outcome.success:
            error_kind = TIMEOUT_ERROR_KIND if outcome.timed_out else ExecutionError.kind
            return QueryResult.failure(
                outcome.error or "Execution failed",
                error_kind=error_kind,
                sql=generated.sql,
                execution_time_ms=outcome.execution_time_ms,
            )

        tables = referenced_tables(generated.sql) or list(plan.tables_needed)
        result = QueryResult(
            success=True,
            sql=generated.sql,
            data=outcome.rows,
            row_count=outcome.row_count,
            execution_time_ms=outcome.execution_time_ms,
            field_confidence=tag_field_confidence(tables, outcome.rows, self.layer),
            warnings=list(outcome.warnings),
        )
        logger.info(
            "Executed statement (%s): %d rows in %.1f ms",
            generated.mode,
            result.row_count,
            result.execution_time_ms,
        )
        return result


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
