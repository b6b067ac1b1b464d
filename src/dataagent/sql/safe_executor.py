"""Read-only DuckDB execution with a hard timeout.

The executor re-validates every statement before dispatch (read-only rules
plus the tenant filter) and fails closed without touching the database when
either check fails. Long-running statements are interrupted from a timer
thread via ``conn.interrupt()``.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from dataagent.sql.guardrails import (
    GuardrailConfig,
    get_query_stats,
    has_tenant_filter,
    validate_sql,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Result of one guarded execution."""

    success: bool
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    execution_time_ms: float = 0.0
    sql_executed: str = ""
    error: str | None = None
    timed_out: bool = False
    rejected: bool = False  # failed a static check, never dispatched
    warnings: list[str] = field(default_factory=list)


class SafeSQLExecutor:
    """Executes single read-only statements against a DuckDB file.

    A fresh read-only connection is opened per call; DuckDB connections
    are not shared across concurrent requests.

    Usage:
        executor = SafeSQLExecutor(db_path)
        result = executor.execute(sql, tenant_id="org-1")
        if result.success:
            for row in result.rows:
                ...
    """

    def __init__(self, db_path: Path | str, config: GuardrailConfig | None = None):
        self.db_path = Path(db_path)
        self.config = config or GuardrailConfig()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        return duckdb.connect(str(self.db_path), read_only=True)

    def check(self, sql: str, tenant_id: str) -> str | None:
        """Static pre-dispatch check. Returns an error message or None."""
        validation = validate_sql(sql, self.config)
        if not validation.is_valid:
            return validation.error
        if not has_tenant_filter(sql, tenant_id, self.config):
            return "Statement is missing the tenant filter"
        return None

    def execute(self, sql: str, *, tenant_id: str) -> ExecutionResult:
        """Execute ``sql`` for ``tenant_id`` under the configured timeout.

        Never raises for database problems; failures come back as an
        unsuccessful ``ExecutionResult``.
        """
        rejection = self.check(sql, tenant_id)
        if rejection:
            logger.warning("Rejected statement before dispatch: %s", rejection)
            return ExecutionResult(success=False, error=rejection, sql_executed=sql, rejected=True)

        logger.debug("Executing SQL: %s | stats=%s", sql, get_query_stats(sql))

        timed_out = threading.Event()
        start_time = time.perf_counter()
        conn: duckdb.DuckDBPyConnection | None = None
        timer: threading.Timer | None = None

        try:
            conn = self._get_connection()

            def _interrupt(target: duckdb.DuckDBPyConnection = conn) -> None:
                timed_out.set()
                target.interrupt()

            timer = threading.Timer(self.config.query_timeout_seconds, _interrupt)
            timer.daemon = True
            timer.start()

            cursor = conn.execute(sql)
            columns = [desc[0] for desc in cursor.description] if cursor.description else []
            raw_rows = cursor.fetchmany(self.config.max_result_rows + 1)

            execution_time_ms = round((time.perf_counter() - start_time) * 1000, 2)

            warnings: list[str] = []
            truncated = len(raw_rows) > self.config.max_result_rows
            if truncated:
                raw_rows = raw_rows[: self.config.max_result_rows]
                warnings.append(f"Results truncated to {self.config.max_result_rows} rows")

            rows = [dict(zip(columns, row)) for row in raw_rows]
            return ExecutionResult(
                success=True,
                rows=rows,
                columns=columns,
                row_count=len(rows),
                truncated=truncated,
                execution_time_ms=execution_time_ms,
                sql_executed=sql,
                warnings=warnings,
            )

        except duckdb.Error as e:
            execution_time_ms = round((time.perf_counter() - start_time) * 1000, 2)
            if timed_out.is_set():
                logger.warning(
                    "Query interrupted after %.0f ms (timeout %.1fs)",
                    execution_time_ms,
                    self.config.query_timeout_seconds,
                )
                return ExecutionResult(
                    success=False,
                    error=f"Query timed out after {self.config.query_timeout_seconds:g}s",
                    execution_time_ms=execution_time_ms,
                    sql_executed=sql,
                    timed_out=True,
                )
            logger.warning("Database error: %s", e)
            return ExecutionResult(
                success=False,
                error=f"Database error: {e}",
                execution_time_ms=execution_time_ms,
                sql_executed=sql,
            )

        finally:
            if timer is not None:
                timer.cancel()
            if conn is not None:
                conn.close()


def create_executor(
    db_path: Path | str,
    *,
    default_limit: int = 100,
    max_result_rows: int = 1000,
    timeout_seconds: float = 30.0,
) -> SafeSQLExecutor:
    """Build a SafeSQLExecutor with custom limits."""
    config = GuardrailConfig(
        default_limit=default_limit,
        max_result_rows=max_result_rows,
        query_timeout_seconds=timeout_seconds,
    )
    return SafeSQLExecutor(db_path, config=config)
