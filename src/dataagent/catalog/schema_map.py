"""Schema Map: read-only index of the business schema, grouped by domain.

Built from the live DuckDB catalog (``information_schema.columns`` plus
declared foreign keys) and cached per tenant with an ``indexed_at``
marker. The planner uses it to ground which tables exist; the formatter
and presenter use column semantic types to pick display formats.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import duckdb

logger = logging.getLogger(__name__)

SCHEMA_CACHE_TTL_SECONDS = 5 * 60


class SemanticType(str, Enum):
    UUID = "uuid"
    TEXT = "text"
    NUMERIC = "numeric"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    JSONB = "jsonb"
    TIMESTAMP = "timestamp"


class Domain(str, Enum):
    ECOMMERCE = "ecommerce"
    CRM = "crm"
    CAMPAIGNS = "campaigns"
    BEHAVIORAL = "behavioral"
    IDENTITY = "identity"
    INTERNAL = "internal"


@dataclass
class ColumnSchema:
    name: str
    type: SemanticType
    nullable: bool = True
    data_type: str = ""  # declared database type, e.g. DECIMAL(10,2)


@dataclass
class Relationship:
    target_table: str
    source_column: str
    target_column: str


@dataclass
class TableSchema:
    name: str
    columns: list[ColumnSchema]
    domain: Domain
    relationships: list[Relationship] = field(default_factory=list)
    description: str = ""

    def column(self, name: str) -> ColumnSchema | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> list[str]:
        return [col.name for col in self.columns]


@dataclass
class SchemaMap:
    """Table name → ``TableSchema``, plus the time it was indexed."""

    tables: dict[str, TableSchema] = field(default_factory=dict)
    indexed_at: float = field(default_factory=time.time)

    def get(self, table_name: str) -> TableSchema | None:
        return self.tables.get(table_name)

    def __contains__(self, table_name: str) -> bool:
        return table_name in self.tables

    def get_available_domains(self) -> list[Domain]:
        """Domains that hold business data (internal tables excluded)."""
        domains: list[Domain] = []
        for table in self.tables.values():
            if table.domain != Domain.INTERNAL and table.domain not in domains:
                domains.append(table.domain)
        return domains

    def get_tables_for_domain(self, domain: Domain | str) -> list[TableSchema]:
        value = domain.value if isinstance(domain, Domain) else domain
        return [t for t in self.tables.values() if t.domain.value == value]

    def describe(self, table_names: list[str] | None = None) -> str:
        """Schema context block for prompts, one line per table."""
        names = table_names if table_names else list(self.tables)
        lines = [self.tables[name].description for name in names if name in self.tables]
        return "\n".join(lines)

    def is_fresh(self, ttl_seconds: float = SCHEMA_CACHE_TTL_SECONDS) -> bool:
        return time.time() - self.indexed_at < ttl_seconds


# =============================================================================
# Classification
# =============================================================================

_BEHAVIORAL_TABLES = {"customer_behavioral_profiles", "segments", "segment_members"}


def classify_domain(table_name: str) -> Domain:
    """Classify a table into a business domain by naming convention."""
    if table_name.startswith("ecom_"):
        return Domain.ECOMMERCE
    if table_name.startswith("crm_"):
        return Domain.CRM
    if table_name.startswith("email_") or table_name.startswith("campaign_"):
        return Domain.CAMPAIGNS
    if table_name in _BEHAVIORAL_TABLES:
        return Domain.BEHAVIORAL
    if table_name == "customer_identity_links":
        return Domain.IDENTITY
    return Domain.INTERNAL


def to_semantic_type(data_type: str) -> SemanticType:
    """Map a declared DuckDB type to a semantic type."""
    upper = data_type.upper().strip()

    if upper.endswith("[]") or upper.startswith(("STRUCT", "MAP", "LIST", "UNION", "JSON")):
        return SemanticType.JSONB
    if upper == "UUID":
        return SemanticType.UUID
    if upper == "BOOLEAN" or upper == "BOOL":
        return SemanticType.BOOLEAN
    if upper.startswith(("TIMESTAMP", "DATE", "TIME", "INTERVAL")):
        return SemanticType.TIMESTAMP
    if upper.startswith(("DECIMAL", "NUMERIC", "DOUBLE", "FLOAT", "REAL")):
        return SemanticType.NUMERIC
    if re.match(r"^U?(TINYINT|SMALLINT|INTEGER|INT|BIGINT|HUGEINT)\b", upper):
        return SemanticType.INTEGER
    return SemanticType.TEXT


def describe_table(table_name: str, columns: list[ColumnSchema], domain: Domain) -> str:
    col_list = ", ".join(f"{c.name} ({c.type.value})" for c in columns)
    return f"Table: {table_name} | Domain: {domain.value} | Columns: {col_list}"


# =============================================================================
# Introspection
# =============================================================================

_FK_PATTERN = re.compile(
    r"FOREIGN\s+KEY\s*\(([^)]*)\)\s*REFERENCES\s+\"?(\w+)\"?\s*\(([^)]*)\)",
    re.IGNORECASE,
)


def introspect_schema(db_path: Path | str) -> SchemaMap:
    """Read tables, columns and declared foreign keys from a DuckDB file.

    Args:
        db_path: Path to the DuckDB database

    Returns:
        Freshly indexed SchemaMap

    Raises:
        FileNotFoundError: If the database file does not exist
        duckdb.Error: If the catalog cannot be read
    """
    path = Path(db_path)
    if not path.exists():
        raise FileNotFoundError(f"Database not found at {path}")

    conn = duckdb.connect(str(path), read_only=True)
    try:
        column_rows = conn.execute(
            """
            SELECT table_name, column_name, data_type, is_nullable
            FROM information_schema.columns
            WHERE table_schema = 'main'
            ORDER BY table_name, ordinal_position
            """
        ).fetchall()

        try:
            constraint_rows = conn.execute(
                """
                SELECT table_name, constraint_text
                FROM duckdb_constraints()
                WHERE constraint_type = 'FOREIGN KEY'
                """
            ).fetchall()
        except duckdb.Error as e:
            logger.warning("Foreign key introspection failed: %s", e)
            constraint_rows = []
    finally:
        conn.close()

    columns_by_table: dict[str, list[ColumnSchema]] = {}
    for table_name, column_name, data_type, is_nullable in column_rows:
        columns_by_table.setdefault(table_name, []).append(
            ColumnSchema(
                name=column_name,
                type=to_semantic_type(str(data_type)),
                nullable=str(is_nullable).upper() == "YES",
                data_type=str(data_type),
            )
        )

    relationships: dict[str, list[Relationship]] = {}
    for table_name, constraint_text in constraint_rows:
        match = _FK_PATTERN.search(constraint_text or "")
        if not match:
            continue
        relationships.setdefault(table_name, []).append(
            Relationship(
                target_table=match.group(2),
                source_column=match.group(1).strip().strip('"'),
                target_column=match.group(3).strip().strip('"'),
            )
        )

    tables: dict[str, TableSchema] = {}
    for table_name, columns in columns_by_table.items():
        domain = classify_domain(table_name)
        tables[table_name] = TableSchema(
            name=table_name,
            columns=columns,
            domain=domain,
            relationships=relationships.get(table_name, []),
            description=describe_table(table_name, columns, domain),
        )

    logger.info("Indexed %d tables from %s", len(tables), path)
    return SchemaMap(tables=tables, indexed_at=time.time())


class SchemaMapCache:
    """Per-tenant Schema Map cache with a TTL.

    The Schema Map is the only state shared between conversations; it is
    read-only once built and replaced wholesale on refresh.
    """

    def __init__(self, db_path: Path | str, *, ttl_seconds: float = SCHEMA_CACHE_TTL_SECONDS):
        self.db_path = Path(db_path)
        self.ttl_seconds = ttl_seconds
        self._maps: dict[str, SchemaMap] = {}
        self._lock = threading.RLock()

    def get(self, tenant_id: str) -> SchemaMap:
        with self._lock:
            cached = self._maps.get(tenant_id)
            if cached is not None and cached.is_fresh(self.ttl_seconds):
                return cached

            schema_map = introspect_schema(self.db_path)
            self._maps[tenant_id] = schema_map
            return schema_map

    def invalidate(self, tenant_id: str | None = None) -> None:
        """Drop one tenant's cached map, or all of them."""
        with self._lock:
            if tenant_id is None:
                self._maps.clear()
            else:
                self._maps.pop(tenant_id, None)
