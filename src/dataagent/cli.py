"""CLI entrypoint for dataagent."""

import json
import logging
import os
import uuid

import click

from dataagent import __version__
from dataagent.catalog.schema_map import introspect_schema
from dataagent.orchestrator.runtime import AgentConfig, DataAgent

DEFAULT_DB_PATH = "./data/dataagent.duckdb"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
@click.version_option(__version__)
@click.option(
    "--log-level",
    default=lambda: os.environ.get("DA_LOG_LEVEL", "WARNING"),
    show_default="WARNING",
    help="Logging level (also DA_LOG_LEVEL)",
)
def main(log_level: str):
    """dataagent - Conversational analytics over a DuckDB database."""
    _configure_logging(log_level)


@main.command()
@click.argument("question")
@click.option("--tenant", "tenant_id", required=True, help="Tenant (org_id) every query is scoped to")
@click.option(
    "--db-path",
    default=lambda: os.environ.get("DA_DB_PATH", DEFAULT_DB_PATH),
    type=click.Path(),
    help=f"Path to DuckDB database file (default: {DEFAULT_DB_PATH})",
)
@click.option("--conversation", "conversation_id", default=None, help="Conversation id (default: new)")
@click.option("--domain", default=None, help="Answer a clarifying question with this domain")
@click.option("--no-llm", is_flag=True, default=False, help="Use deterministic planning and SQL templates only")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the full turn outcome as JSON")
def ask(
    question: str,
    tenant_id: str,
    db_path: str,
    conversation_id: str | None,
    domain: str | None,
    no_llm: bool,
    as_json: bool,
):
    """Ask a question about the data."""
    config = AgentConfig.from_env(db_path=db_path, use_llm=False if no_llm else None)
    conversation_id = conversation_id or str(uuid.uuid4())

    with DataAgent(config) as agent:
        outcome = agent.answer(question, tenant_id=tenant_id, conversation_id=conversation_id, domain=domain)

        if outcome.needs_clarification and outcome.clarification and outcome.clarification.options and not as_json:
            click.echo(outcome.formatted_message)
            reply = click.prompt("\nYour choice", default="1")
            outcome = agent.answer(reply, tenant_id=tenant_id, conversation_id=conversation_id)

    if as_json:
        click.echo(json.dumps(outcome.model_dump(mode="json"), indent=2))
    else:
        click.echo(outcome.formatted_message)
        if outcome.narrative_summary and outcome.row_count > 1:
            click.echo("")
            click.echo(outcome.narrative_summary)

    if not outcome.success:
        raise SystemExit(1)


@main.command()
@click.option(
    "--db-path",
    default=lambda: os.environ.get("DA_DB_PATH", DEFAULT_DB_PATH),
    type=click.Path(),
    help=f"Path to DuckDB database file (default: {DEFAULT_DB_PATH})",
)
@click.option("--domain", default=None, help="Only show tables in this domain")
def schema(db_path: str, domain: str | None):
    """Show the Schema Map: tables grouped by domain."""
    try:
        schema_map = introspect_schema(db_path)
    except FileNotFoundError as e:
        click.echo(f"❌ Error: {e}", err=True)
        raise click.Abort()

    tables_by_domain: dict[str, list[str]] = {}
    for table in schema_map.tables.values():
        tables_by_domain.setdefault(table.domain.value, []).append(table.name)

    for domain_name in sorted(tables_by_domain):
        if domain and domain_name != domain:
            continue
        click.echo(f"\n{domain_name}:")
        for name in sorted(tables_by_domain[domain_name]):
            table = schema_map.tables[name]
            columns = ", ".join(f"{c.name} ({c.type.value})" for c in table.columns)
            click.echo(f"  {name}: {columns}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port")
@click.option(
    "--db-path",
    default=lambda: os.environ.get("DA_DB_PATH", DEFAULT_DB_PATH),
    type=click.Path(),
    help=f"Path to DuckDB database file (default: {DEFAULT_DB_PATH})",
)
def serve(host: str, port: int, db_path: str):
    """Run the HTTP API."""
    import uvicorn

    os.environ["DA_DB_PATH"] = db_path
    click.echo(f"Serving on http://{host}:{port} (DB: {db_path})")
    uvicorn.run("dataagent.api.server:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    main()
