"""Execution module: plan to guarded statement to QueryResult."""

from dataagent.execution.executor import QueryExecutor
from dataagent.execution.validation import ValidationVerdict, validate_result

__all__ = ["QueryExecutor", "ValidationVerdict", "validate_result"]
