"""Validation Gate: detects under-fetched results.

Catches the generation bug where "top 5" turns into a one-row query. A
result is under-fetched only when the executed statement's LIMIT is smaller
than the plan's expected count; a statement with an adequate LIMIT that
simply matched fewer rows is a complete answer. Failed and empty results
are terminal and never retried.
"""

from typing import NamedTuple

from dataagent.planning.schema import QueryPlan
from dataagent.results import QueryResult
from dataagent.sql.guardrails import extract_limit


class ValidationVerdict(NamedTuple):
    needs_retry: bool
    reason: str | None = None


def validate_result(result: QueryResult, plan: QueryPlan) -> ValidationVerdict:
    """Decide whether ``result`` deserves the single corrective retry."""
    if not result.success or not result.data:
        return ValidationVerdict(False)

    if plan.expected_count is None:
        return ValidationVerdict(False)

    limit = extract_limit(result.sql)
    if limit is not None and limit < plan.expected_count:
        return ValidationVerdict(
            True,
            f"The query has LIMIT {limit} but the user asked for {plan.expected_count} rows. "
            f"Change the LIMIT to {plan.expected_count}.",
        )

    return ValidationVerdict(False)
