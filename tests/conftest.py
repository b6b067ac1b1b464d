"""Shared test fixtures for the dataagent test suite.

Provides a small multi-domain DuckDB database with precisely-known data for
two tenants, plus agent and TestClient fixtures built on it:

* ``db_path``     -- path to the seeded DuckDB file
* ``schema_map``  -- Schema Map introspected from ``db_path``
* ``agent``       -- DataAgent with deterministic planning and SQL templates
* ``client``      -- FastAPI TestClient backed by ``agent``

Known data for ``org_a``:
    12 customers; customer N has total_spent = N * 100 and orders_count = N.
    Customer 12 (Alice Smith) is the top spender. 20 orders at 25 * N each.
``org_b`` has 3 customers with total_spent 9999 so any tenant leak is obvious.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import duckdb
import pytest
from fastapi.testclient import TestClient

from dataagent.api.server import create_app
from dataagent.catalog.schema_map import introspect_schema
from dataagent.orchestrator.runtime import AgentConfig, DataAgent
from dataagent.telemetry import NullTelemetrySink

# ---------------------------------------------------------------------------
# Known data
# ---------------------------------------------------------------------------

ORG_A = "org_a"
ORG_B = "org_b"

FIRST_NAMES = [
    "Bob", "Carol", "Dave", "Erin", "Frank", "Grace",
    "Heidi", "Ivan", "Judy", "Mallory", "Niaj", "Alice",
]
LAST_NAMES = [
    "Jones", "White", "Brown", "Green", "Black", "Hopper",
    "Klum", "Petrov", "Moss", "Stone", "Patel", "Smith",
]
STATES = ["NY", "CA", "TX", "NY", "CA", "TX", "NY", "CA", "TX", "NY", "CA", "NY"]
LIFECYCLE_STAGES = ["champion", "at_risk", "lapsed", "active"]


def uid(prefix: int, n: int) -> str:
    """Deterministic UUID-shaped id: prefix picks the table, n the row."""
    return f"{prefix:08x}-0000-4000-8000-{n:012x}"


def customer_id(n: int, org: str = ORG_A) -> str:
    return uid(1 if org == ORG_A else 2, n)


def _create_schema(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("""
        CREATE TABLE ecom_customers (
            id VARCHAR,
            org_id VARCHAR,
            first_name VARCHAR,
            last_name VARCHAR,
            email VARCHAR,
            city VARCHAR,
            state VARCHAR,
            tags VARCHAR[],
            total_spent DECIMAL(10,2),
            orders_count INTEGER,
            created_at TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE ecom_orders (
            id VARCHAR,
            org_id VARCHAR,
            customer_id VARCHAR,
            total_price DECIMAL(10,2),
            status VARCHAR,
            created_at TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE ecom_products (
            id VARCHAR,
            org_id VARCHAR,
            title VARCHAR,
            product_type VARCHAR,
            price DECIMAL(10,2)
        )
    """)
    conn.execute("""
        CREATE TABLE crm_contacts (
            id VARCHAR,
            org_id VARCHAR,
            first_name VARCHAR,
            last_name VARCHAR,
            email VARCHAR,
            company_id VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE crm_companies (
            id VARCHAR,
            org_id VARCHAR,
            name VARCHAR,
            industry VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE crm_deals (
            id VARCHAR,
            org_id VARCHAR,
            contact_id VARCHAR,
            name VARCHAR,
            stage VARCHAR,
            value DECIMAL(12,2)
        )
    """)
    conn.execute("""
        CREATE TABLE email_campaigns (
            id VARCHAR,
            org_id VARCHAR,
            name VARCHAR,
            status VARCHAR,
            sent_at TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE email_customer_variants (
            id VARCHAR,
            org_id VARCHAR,
            campaign_id VARCHAR,
            ecom_customer_id VARCHAR,
            delivery_status VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE customer_behavioral_profiles (
            id VARCHAR,
            org_id VARCHAR,
            ecom_customer_id VARCHAR,
            lifecycle_stage VARCHAR,
            engagement_score DOUBLE,
            communication_style VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE segments (
            id VARCHAR,
            org_id VARCHAR,
            name VARCHAR,
            description VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE segment_members (
            id VARCHAR,
            org_id VARCHAR,
            segment_id VARCHAR,
            ecom_customer_id VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE customer_identity_links (
            id VARCHAR,
            org_id VARCHAR,
            ecom_customer_id VARCHAR,
            crm_contact_id VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE sync_jobs (
            id VARCHAR,
            org_id VARCHAR,
            status VARCHAR
        )
    """)


def _seed(conn: duckdb.DuckDBPyConnection) -> None:
    for n in range(1, 13):
        first, last = FIRST_NAMES[n - 1], LAST_NAMES[n - 1]
        conn.execute(
            "INSERT INTO ecom_customers VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                customer_id(n),
                ORG_A,
                first,
                last,
                f"{first.lower()}@example.com",
                "Springfield",
                STATES[n - 1],
                ["vip"] if n * 100 > 500 else ["standard"],
                n * 100,
                n,
                datetime(2024, 1, n, 9, 30),
            ],
        )
        conn.execute(
            "INSERT INTO customer_behavioral_profiles VALUES (?, ?, ?, ?, ?, ?)",
            [
                uid(5, n),
                ORG_A,
                customer_id(n),
                LIFECYCLE_STAGES[n % len(LIFECYCLE_STAGES)],
                round(n / 12, 2),
                "friendly",
            ],
        )

    for n in range(1, 4):
        conn.execute(
            "INSERT INTO ecom_customers VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                customer_id(n, ORG_B),
                ORG_B,
                f"Other{n}",
                "Tenant",
                f"other{n}@example.org",
                "Shelbyville",
                "WA",
                ["standard"],
                9999,
                99,
                datetime(2024, 2, n),
            ],
        )

    for n in range(1, 21):
        customer = (n - 1) % 12 + 1
        conn.execute(
            "INSERT INTO ecom_orders VALUES (?, ?, ?, ?, ?, ?)",
            [uid(3, n), ORG_A, customer_id(customer), 25 * n, "paid", datetime(2024, 3, n)],
        )

    conn.execute(
        "INSERT INTO ecom_products VALUES (?, ?, ?, ?, ?)",
        [uid(4, 1), ORG_A, "Widget", "Gadget", 19.99],
    )

    for n in range(1, 4):
        conn.execute(
            "INSERT INTO crm_companies VALUES (?, ?, ?, ?)",
            [uid(6, n), ORG_A, f"Company {n}", "Retail"],
        )
        conn.execute(
            "INSERT INTO crm_contacts VALUES (?, ?, ?, ?, ?, ?)",
            [uid(7, n), ORG_A, FIRST_NAMES[n - 1], LAST_NAMES[n - 1], f"contact{n}@corp.com", uid(6, n)],
        )
        conn.execute(
            "INSERT INTO crm_deals VALUES (?, ?, ?, ?, ?, ?)",
            [uid(8, n), ORG_A, uid(7, n), f"Deal {n}", ["negotiation", "closed_won", "closed_lost"][n - 1], n * 1000],
        )

    conn.execute(
        "INSERT INTO email_campaigns VALUES (?, ?, ?, ?, ?)",
        [uid(9, 1), ORG_A, "Spring Sale", "sent", datetime(2024, 4, 1)],
    )
    for n in range(1, 5):
        conn.execute(
            "INSERT INTO email_customer_variants VALUES (?, ?, ?, ?, ?)",
            [uid(10, n), ORG_A, uid(9, 1), customer_id(n), ["sent", "opened", "opened", "bounced"][n - 1]],
        )

    conn.execute(
        "INSERT INTO segments VALUES (?, ?, ?, ?)",
        [uid(11, 1), ORG_A, "Big Spenders", "Customers who spend the most"],
    )
    conn.execute(
        "INSERT INTO segment_members VALUES (?, ?, ?, ?)",
        [uid(12, 1), ORG_A, uid(11, 1), customer_id(12)],
    )
    conn.execute(
        "INSERT INTO customer_identity_links VALUES (?, ?, ?, ?)",
        [uid(13, 1), ORG_A, customer_id(1), uid(7, 1)],
    )
    conn.execute("INSERT INTO sync_jobs VALUES (?, ?, ?)", [uid(14, 1), ORG_A, "done"])


def build_database(path: Path) -> Path:
    conn = duckdb.connect(str(path))
    try:
        _create_schema(conn)
        _seed(conn)
    finally:
        conn.close()
    return path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def no_llm_provider(monkeypatch):
    """Tests never reach a real model unless they inject one."""
    monkeypatch.setenv("DA_LLM_PROVIDER", "none")
    monkeypatch.delenv("DA_TELEMETRY_PATH", raising=False)


@pytest.fixture(scope="session")
def db_path(tmp_path_factory) -> Path:
    return build_database(tmp_path_factory.mktemp("dataagent") / "test.duckdb")


@pytest.fixture(scope="session")
def schema_map(db_path):
    return introspect_schema(db_path)


@pytest.fixture
def agent_config(db_path) -> AgentConfig:
    return AgentConfig(db_path=str(db_path), use_llm=False)


@pytest.fixture
def agent(agent_config):
    agent = DataAgent(agent_config, telemetry=NullTelemetrySink())
    yield agent
    agent.close()


@pytest.fixture
def client(agent):
    return TestClient(create_app(agent))
