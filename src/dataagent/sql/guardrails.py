"""SQL guardrails for tenant-scoped, read-only execution.

Every statement that reaches the database passes through here, no matter
whether a language model or the templated builder produced it.

Safety Features:
- SELECT/WITH-only validation, single statement
- Blocked keywords (DROP, DELETE, UPDATE, INSERT, ALTER, COPY, ATTACH, ...)
- Blocked patterns (comments, file readers, tautologies)
- Set operations (UNION, INTERSECT, EXCEPT) rejected
- Tenant filter enforcement: every SELECT block restricts each table it reads
  with ``org_id = '<tenant>'``
- LIMIT defaulting and capping, plus LIMIT extraction for the Validation Gate
"""

import re
from dataclasses import dataclass
from typing import NamedTuple

from dataagent.errors import GenerationError


class ValidationResult(NamedTuple):
    """Result of SQL validation."""

    is_valid: bool
    error: str | None = None
    warnings: list[str] | None = None


@dataclass
class GuardrailConfig:
    """Configuration for SQL guardrails."""

    default_limit: int = 100
    max_limit: int = 1000
    max_result_rows: int = 1000
    query_timeout_seconds: float = 30.0
    tenant_column: str = "org_id"

    # Case-insensitive, matched on word boundaries so updated_at is fine
    blocked_keywords: tuple[str, ...] = (
        "DROP",
        "DELETE",
        "UPDATE",
        "INSERT",
        "ALTER",
        "TRUNCATE",
        "GRANT",
        "REVOKE",
        "CREATE",
        "MERGE",
        "EXECUTE",
        "CALL",
        "SET",
        "PRAGMA",
        "ATTACH",
        "DETACH",
        "COPY",
        "EXPORT",
        "IMPORT",
        "INSTALL",
        "LOAD",
        "CHECKPOINT",
        "VACUUM",
        # A set operation can append rows from a second, unscoped SELECT
        "UNION",
        "INTERSECT",
        "EXCEPT",
    )

    blocked_patterns: tuple[str, ...] = (
        r"--",  # line comments can hide the tenant filter
        r"/\*",  # block comments
        r"\bread_(csv|csv_auto|parquet|json|json_auto|text|blob)\s*\(",  # file readers
        r"\b(glob|parquet_scan|sniff_csv)\s*\(",
        r"\bOR\s+(\d+)\s*=\s*\1\b",  # OR 1=1
        r"\bOR\s+TRUE\b",
        r"'\s*(https?|s3|gs|file)://",  # remote or local file URLs
    )

    allowed_prefixes: tuple[str, ...] = ("SELECT", "WITH")


DEFAULT_CONFIG = GuardrailConfig()

_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")

_CLAUSE_KEYWORDS = {
    "WHERE", "JOIN", "LEFT", "RIGHT", "INNER", "OUTER", "FULL", "CROSS", "GROUP",
    "ORDER", "LIMIT", "HAVING", "ON", "USING", "UNION", "QUALIFY", "WINDOW", "NATURAL",
    "LATERAL", "TABLESAMPLE", "POSITIONAL", "ASOF", "SEMI", "ANTI", "OFFSET",
}


# =============================================================================
# Read-only validation
# =============================================================================

def validate_sql(sql: str, config: GuardrailConfig | None = None) -> ValidationResult:
    """Validate a statement against the read-only rules.

    Args:
        sql: SQL query string to validate
        config: Optional guardrail configuration

    Returns:
        ValidationResult with is_valid flag and optional error message
    """
    if config is None:
        config = DEFAULT_CONFIG

    if not sql or not sql.strip():
        return ValidationResult(is_valid=False, error="Empty SQL query")

    sql_upper = sql.strip().upper()
    if not any(re.match(rf"{prefix}\b", sql_upper) for prefix in config.allowed_prefixes):
        return ValidationResult(
            is_valid=False,
            error=f"Query must start with one of: {', '.join(config.allowed_prefixes)}",
        )

    blocked = detect_dangerous_keywords(sql, config)
    if blocked:
        return ValidationResult(
            is_valid=False,
            error=f"Blocked keyword(s) detected: {', '.join(blocked)}",
        )

    pattern_match = detect_dangerous_patterns(sql, config)
    if pattern_match:
        return ValidationResult(is_valid=False, error=f"Dangerous pattern detected: {pattern_match}")

    warnings = []
    if extract_limit(sql) is None:
        warnings.append("Query has no LIMIT clause; one will be enforced")

    return ValidationResult(is_valid=True, warnings=warnings or None)


def detect_dangerous_keywords(sql: str, config: GuardrailConfig | None = None) -> list[str]:
    """Blocked keywords outside string literals."""
    if config is None:
        config = DEFAULT_CONFIG

    sql_upper = _remove_string_literals(sql).upper()
    return [kw for kw in config.blocked_keywords if re.search(rf"\b{kw}\b", sql_upper)]


def detect_dangerous_patterns(sql: str, config: GuardrailConfig | None = None) -> str | None:
    """Return a description of the first blocked pattern found, or None."""
    if config is None:
        config = DEFAULT_CONFIG

    for pattern in config.blocked_patterns:
        if re.search(pattern, sql, re.IGNORECASE | re.DOTALL):
            return f"Pattern: {pattern}"

    # One statement only; a single trailing semicolon is tolerated
    body = _remove_string_literals(sql).strip()
    if body.endswith(";"):
        body = body[:-1]
    if ";" in body:
        return "Multiple statements detected (only a single SELECT is allowed)"

    return None


# =============================================================================
# Tenant scoping
# =============================================================================
#
# Each SELECT block is scoped on its own: the statement itself, every CTE
# body, subquery and derived table. Inside a block, each table in the FROM
# clause must be restricted to the tenant by either
#   - a top-level WHERE term ``<alias>.org_id = '<tenant>'``, or
#   - a top-level ON term naming the tenant or tying ``<alias>.org_id`` to a
#     table earlier in the same FROM clause that is already restricted.
# Missing restrictions are added as ``<filter> AND (<existing conditions>)``
# so an OR in the existing conditions cannot bypass them.

_QUOTED = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"")
_SUBQUERY_START = re.compile(r"\s*(?:SELECT|WITH)\b", re.IGNORECASE)
_SELECT = re.compile(r"\bSELECT\b", re.IGNORECASE)
_CLAUSE = re.compile(r"\b(FROM|WHERE|GROUP\s+BY|HAVING|QUALIFY|WINDOW|ORDER\s+BY|LIMIT|OFFSET)\b", re.IGNORECASE)
_JOIN = re.compile(
    r"\b(?:NATURAL\s+)?(?:(?:LEFT|RIGHT|FULL)(?:\s+OUTER)?\s+|INNER\s+|CROSS\s+|SEMI\s+|ANTI\s+|POSITIONAL\s+|ASOF\s+)?JOIN\b",
    re.IGNORECASE,
)
_COMMA = re.compile(r",")
_ON = re.compile(r"\bON\b", re.IGNORECASE)
_USING = re.compile(r"\bUSING\b", re.IGNORECASE)
_AND = re.compile(r"\bAND\b", re.IGNORECASE)
_OR = re.compile(r"\bOR\b", re.IGNORECASE)
_DERIVED = re.compile(r"\s*(?:LATERAL\s+)?\(", re.IGNORECASE)
_TABLE_REF = re.compile(r'\s*(?:"?\w+"?\s*\.\s*)*"?(\w+)"?\s*(\()?')
_ALIAS = re.compile(r'\s*(?:AS\s+)?"?(\w+)"?', re.IGNORECASE)

# Table functions that produce rows without reading a table
ROW_GENERATORS = ("range", "generate_series", "unnest")


@dataclass
class FromItem:
    """One entry of a FROM clause."""

    qualifier: str | None  # None for derived tables and row generators
    alias: str | None
    on_span: tuple[int, int] | None  # offsets of the ON condition, if any


def check_tenant_id(tenant_id: str) -> str:
    """Reject tenant ids that cannot be embedded as a plain literal."""
    if not tenant_id or not _TENANT_ID_PATTERN.match(tenant_id):
        raise GenerationError("Invalid tenant id", details={"tenant_id": tenant_id})
    return tenant_id


def _tenant_literals(sql: str, column: str) -> list[str]:
    return re.findall(rf"\b{column}\s*=\s*'([^']*)'", sql, re.IGNORECASE)


def has_tenant_filter(sql: str, tenant_id: str, config: GuardrailConfig | None = None) -> bool:
    """True when every SELECT block already restricts its tables to ``tenant_id``.

    Every tenant comparison in the statement must name ``tenant_id`` too. A
    statement that would need rewriting to be scoped fails the check.
    """
    if config is None:
        config = DEFAULT_CONFIG

    literals = _tenant_literals(sql, config.tenant_column)
    if not literals or any(value != tenant_id for value in literals):
        return False
    try:
        return scope_select(sql, tenant_id, config.tenant_column) == sql
    except GenerationError:
        return False


def ensure_tenant_filter(sql: str, tenant_id: str, config: GuardrailConfig | None = None) -> str:
    """Scope every SELECT block in the statement to ``tenant_id``.

    Tenant literals with the wrong value are rewritten in place first, then
    each block gets whatever restrictions it is missing.

    Raises:
        GenerationError: If a block reads from something that cannot be scoped
    """
    if config is None:
        config = DEFAULT_CONFIG
    check_tenant_id(tenant_id)
    column = config.tenant_column

    literal_pattern = re.compile(rf"(\b(?:\w+\.)?{column})\s*=\s*'[^']*'", re.IGNORECASE)
    sql = literal_pattern.sub(lambda m: f"{m.group(1)} = '{tenant_id}'", sql)
    return scope_select(sql, tenant_id, column)


def scope_select(sql: str, tenant_id: str, column: str = "org_id") -> str:
    """Add the tenant restrictions one SELECT block (and its nested blocks) lacks."""
    sql = _scope_nested(sql, tenant_id, column)
    masked = _mask_quoted(sql)
    depths = _depths(masked)

    selects = _top_level(_SELECT, masked, depths)
    if len(selects) != 1:
        raise GenerationError("Each query block must contain exactly one SELECT", details={"sql": sql})

    marks = [m for m in _top_level(_CLAUSE, masked, depths, selects[0].end()) if not _is_distinct_from(masked, m)]
    from_mark = next((m for m in marks if m.group(1).upper() == "FROM"), None)
    if from_mark is None:
        return sql

    later = [m for m in marks if m.start() > from_mark.start()]
    where_mark = next((m for m in later if m.group(1).upper() == "WHERE"), None)
    anchor = (where_mark or from_mark).start()
    tail_start = next(
        (m.start() for m in later if m.start() > anchor and m.group(1).upper() != "WHERE"),
        len(sql),
    )
    from_end = where_mark.start() if where_mark else tail_start

    items = _from_items(sql, masked, depths, from_mark.end(), from_end)
    direct = set()
    if where_mark:
        for term in _conjuncts(sql[where_mark.end():tail_start]):
            scope = _literal_scope(term, column)
            if scope and scope[1] == tenant_id:
                direct.add(scope[0])

    scoped: set[str] = set()
    missing: list[str] = []
    edits: list[tuple[int, int, str]] = []
    for item in items:
        if item.qualifier is None:
            if item.alias:
                scoped.add(item.alias.lower())
            continue

        name = item.qualifier.lower()
        condition = f"{item.qualifier}.{column} = '{tenant_id}'"
        if name in direct or (len(items) == 1 and "" in direct):
            scoped.add(name)
            continue

        if item.on_span is not None:
            start, end = item.on_span
            on_condition = sql[start:end]
            if not _is_tied(_conjuncts(on_condition), name, scoped, tenant_id, column):
                edits.append((start, end, f" {condition} AND ({on_condition.strip()})"))
        else:
            missing.append(condition)
        scoped.add(name)

    if missing:
        filters = " AND ".join(missing)
        if where_mark:
            start = where_mark.end()
            end = start + len(sql[start:tail_start].rstrip())
            edits.append((start, end, f" {filters} AND ({sql[start:end].strip()})"))
        else:
            start = from_mark.end() + len(sql[from_mark.end():from_end].rstrip())
            edits.append((start, start, f" WHERE {filters}"))

    for start, end, replacement in sorted(edits, reverse=True):
        sql = sql[:start] + replacement + sql[end:]
    return sql


def _scope_nested(sql: str, tenant_id: str, column: str) -> str:
    """Scope every parenthesized SELECT inside ``sql``."""
    masked = _mask_quoted(sql)
    pieces: list[str] = []
    last = 0
    depth = 0
    opened = 0
    for i, ch in enumerate(masked):
        if ch == "(":
            if depth == 0:
                opened = i
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise GenerationError("Unbalanced parentheses", details={"sql": sql})
            if depth == 0:
                inner = sql[opened + 1:i]
                if _SUBQUERY_START.match(inner):
                    inner = scope_select(inner, tenant_id, column)
                else:
                    inner = _scope_nested(inner, tenant_id, column)
                pieces.append(sql[last:opened + 1])
                pieces.append(inner)
                last = i
    if depth != 0:
        raise GenerationError("Unbalanced parentheses", details={"sql": sql})
    pieces.append(sql[last:])
    return "".join(pieces)


def _from_items(sql: str, masked: str, depths: list[int], start: int, end: int) -> list[FromItem]:
    separators = sorted(
        _top_level(_COMMA, masked, depths, start, end) + _top_level(_JOIN, masked, depths, start, end),
        key=lambda m: m.start(),
    )
    bounds = [start] + [pos for m in separators for pos in (m.start(), m.end())] + [end]

    items = []
    for seg_start, seg_end in zip(bounds[::2], bounds[1::2]):
        on = next(iter(_top_level(_ON, masked, depths, seg_start, seg_end)), None)
        using = next(iter(_top_level(_USING, masked, depths, seg_start, seg_end)), None)
        ref_end = on.start() if on else using.start() if using else seg_end
        on_span = None
        if on:
            on_span = (on.end(), on.end() + len(sql[on.end():seg_end].rstrip()))
        items.append(_parse_from_item(sql, masked, seg_start, ref_end, on_span))
    return items


def _parse_from_item(sql: str, masked: str, start: int, end: int, on_span: tuple[int, int] | None) -> FromItem:
    ref = sql[start:end]
    if not ref.strip():
        raise GenerationError("Empty FROM item", details={"sql": sql})

    derived = _DERIVED.match(masked, start, end)
    if derived:
        close = _closing_paren(masked, derived.end() - 1)
        return FromItem(None, _alias(sql[close + 1:end]), on_span)

    match = _TABLE_REF.match(ref)
    if not match:
        raise GenerationError(f"Unrecognized FROM item: {ref.strip()}", details={"sql": sql})
    name = match.group(1)
    if match.group(2):
        if name.lower() not in ROW_GENERATORS:
            raise GenerationError(f"Table function not allowed: {name}", details={"sql": sql})
        close = _closing_paren(masked, start + match.end() - 1)
        return FromItem(None, _alias(sql[close + 1:end]), on_span)

    alias = _alias(ref[match.end():])
    return FromItem(alias or name, alias, on_span)


def _alias(text: str) -> str | None:
    match = _ALIAS.match(text)
    if match and match.group(1).upper() not in _CLAUSE_KEYWORDS:
        return match.group(1)
    return None


def _conjuncts(condition: str) -> list[str]:
    """Top-level AND terms of a condition; empty when it has a top-level OR."""
    masked = _mask_quoted(condition)
    depths = _depths(masked)
    if _top_level(_OR, masked, depths):
        return []

    terms, last = [], 0
    for m in _top_level(_AND, masked, depths):
        terms.append(condition[last:m.start()].strip())
        last = m.end()
    terms.append(condition[last:].strip())
    return terms


def _unwrap(term: str) -> str:
    term = term.strip()
    if term.startswith("(") and term.endswith(")"):
        return term[1:-1].strip()
    return term


def _literal_scope(term: str, column: str) -> tuple[str, str] | None:
    """(qualifier, literal) for ``[q.]org_id = '<literal>'``; '' when unqualified."""
    term = _unwrap(term)
    column_ref = rf"(?:\"?(\w+)\"?\.)?\"?{column}\"?"
    match = re.fullmatch(rf"{column_ref}\s*=\s*'([^']*)'", term, re.IGNORECASE)
    if match:
        return (match.group(1) or "").lower(), match.group(2)
    match = re.fullmatch(rf"'([^']*)'\s*=\s*{column_ref}", term, re.IGNORECASE)
    if match:
        return (match.group(2) or "").lower(), match.group(1)
    return None


def _is_tied(terms: list[str], name: str, scoped: set[str], tenant_id: str, column: str) -> bool:
    """True when an ON term restricts ``name`` to the tenant or to a scoped table."""
    column_ref = rf"\"?(\w+)\"?\.\"?{column}\"?"
    for term in terms:
        if _literal_scope(term, column) == (name, tenant_id):
            return True
        match = re.fullmatch(rf"{column_ref}\s*=\s*{column_ref}", _unwrap(term), re.IGNORECASE)
        if match:
            left, right = match.group(1).lower(), match.group(2).lower()
            if (left == name and right in scoped) or (right == name and left in scoped):
                return True
    return False


def _is_distinct_from(masked: str, match: re.Match) -> bool:
    return match.group(1).upper() == "FROM" and masked[:match.start()].rstrip().upper().endswith("DISTINCT")


# =============================================================================
# LIMIT handling
# =============================================================================

def extract_limit(sql: str) -> int | None:
    """Numeric value of the outermost (last) LIMIT clause, if any."""
    values = re.findall(r"\bLIMIT\s+(\d+)", _remove_string_literals(sql), re.IGNORECASE)
    return int(values[-1]) if values else None


def enforce_limit(sql: str, config: GuardrailConfig | None = None) -> str:
    """Add the default LIMIT when there is none and cap oversized ones."""
    if config is None:
        config = DEFAULT_CONFIG

    sql_clean = sql.strip().rstrip(";").rstrip()
    trailing = re.search(r"\bLIMIT\s+(\d+)(\s+OFFSET\s+\d+)?\s*$", sql_clean, re.IGNORECASE)

    if trailing:
        if int(trailing.group(1)) > config.max_limit:
            offset = trailing.group(2) or ""
            return f"{sql_clean[:trailing.start()]}LIMIT {config.max_limit}{offset}"
        return sql_clean

    return f"{sql_clean} LIMIT {config.default_limit}"


# =============================================================================
# Full statement preparation
# =============================================================================

def prepare_statement(sql: str, tenant_id: str, config: GuardrailConfig | None = None) -> str:
    """Run a generated statement through every guardrail.

    Returns the statement that may be dispatched.

    Raises:
        GenerationError: If the statement is not a pure read or cannot be scoped
    """
    if config is None:
        config = DEFAULT_CONFIG

    validation = validate_sql(sql, config)
    if not validation.is_valid:
        raise GenerationError(validation.error or "Invalid SQL", details={"sql": sql})

    scoped = enforce_limit(ensure_tenant_filter(sql.strip().rstrip(";"), tenant_id, config), config)

    if not has_tenant_filter(scoped, tenant_id, config):
        raise GenerationError("Statement is not scoped to the tenant", details={"sql": scoped})

    # The rewritten statement must still be a pure read
    recheck = validate_sql(scoped, config)
    if not recheck.is_valid:
        raise GenerationError(recheck.error or "Invalid SQL", details={"sql": scoped})

    return scoped


def _remove_string_literals(sql: str) -> str:
    """Blank out quoted strings and identifiers before pattern matching."""
    sql = re.sub(r"'([^']|'')*'", "''", sql)
    sql = re.sub(r'"([^"]|"")*"', '""', sql)
    return sql


def _mask_quoted(sql: str) -> str:
    """Same-length copy of ``sql`` with quoted text blanked, so offsets line up."""
    return _QUOTED.sub(lambda m: m.group(0)[0] + " " * (len(m.group(0)) - 2) + m.group(0)[-1], sql)


def _depths(masked: str) -> list[int]:
    """Parenthesis depth at each offset; a parenthesis sits at its outer depth."""
    depths, depth = [], 0
    for ch in masked:
        if ch == ")":
            depth -= 1
            if depth < 0:
                raise GenerationError("Unbalanced parentheses")
        depths.append(depth)
        if ch == "(":
            depth += 1
    if depth != 0:
        raise GenerationError("Unbalanced parentheses")
    return depths


def _top_level(
    pattern: re.Pattern, masked: str, depths: list[int], start: int = 0, end: int | None = None
) -> list[re.Match]:
    end = len(masked) if end is None else end
    return [m for m in pattern.finditer(masked, start, end) if depths[m.start()] == 0]


def _closing_paren(masked: str, opened: int) -> int:
    depth = 0
    for i in range(opened, len(masked)):
        if masked[i] == "(":
            depth += 1
        elif masked[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    raise GenerationError("Unbalanced parentheses")


def get_query_stats(sql: str) -> dict:
    """Shape of a statement, for debug logging."""
    sql_upper = sql.upper()
    return {
        "join_count": len(re.findall(r"\bJOIN\b", sql_upper)),
        "has_aggregation": bool(re.search(r"\b(COUNT|SUM|AVG|MIN|MAX)\s*\(", sql_upper)),
        "has_subquery": sql_upper.count("SELECT") > 1,
        "has_group_by": bool(re.search(r"\bGROUP\s+BY\b", sql_upper)),
        "limit_value": extract_limit(sql),
        "query_length": len(sql),
    }


_TENANT_PREDICATE = re.compile(r"(?:\w+\.)?org_id\s*=\s*(?:'[^']*'|\w+\.org_id)", re.IGNORECASE)
_FILTER_CLAUSE = re.compile(
    r"\b(?:WHERE|HAVING)\b(.*?)(?=\bGROUP\s+BY\b|\bHAVING\b|\bQUALIFY\b|\bWINDOW\b"
    r"|\bORDER\s+BY\b|\bLIMIT\b|\)|$)",
    re.IGNORECASE | re.DOTALL,
)


def has_row_filters(sql: str) -> bool:
    """True when a WHERE or HAVING clause narrows rows beyond the tenant filter."""
    masked = _mask_quoted(_TENANT_PREDICATE.sub("", sql))
    for match in _FILTER_CLAUSE.finditer(masked):
        if re.sub(r"\bAND\b|[()\s]", "", match.group(1), flags=re.IGNORECASE):
            return True
    return False
