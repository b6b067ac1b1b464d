"""FastAPI conversation boundary for the data agent.

Wraps ``DataAgent.answer`` in a stable JSON contract for chat UIs. SQL,
plans and stack traces never leave the server; failures come back as the
agent's apologetic message with ``success: false``.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import duckdb
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from dataagent import __version__
from dataagent.llm.router import get_current_config
from dataagent.orchestrator.runtime import AgentConfig, DataAgent
from dataagent.planning.schema import Clarification
from dataagent.results import Visualization

logger = logging.getLogger(__name__)

TENANT_ID_PATTERN = r"^[A-Za-z0-9_\-]+$"


class HistoryTurn(BaseModel):
    """A prior turn supplied by callers that keep history themselves."""
    question: str
    sql: str
    tables: list[str] = Field(default_factory=list)
    domain: str = "all"
    entity_ids: list[str] = Field(default_factory=list)
    result_values: dict[str, list[Any]] = Field(default_factory=dict)
    result_summary: str = ""


class AskRequest(BaseModel):
    """Request to answer one message."""
    message: str = Field(..., min_length=1, description="The user's message")
    conversation_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., pattern=TENANT_ID_PATTERN)
    history: list[HistoryTurn] = Field(default_factory=list)
    resolved_references: dict[str, Any] = Field(default_factory=dict)
    domain: str | None = Field(None, description="Domain chosen in answer to a clarifying question")


class AskResponse(BaseModel):
    """Unified response for one turn."""
    turn_id: str
    success: bool
    formatted_message: str
    narrative_summary: str | None = None
    visualization: Visualization | None = None
    needs_clarification: bool = False
    clarification: Clarification | None = None
    row_count: int = 0
    error_kind: str | None = None
    caveat: str | None = None
    stage_timings: dict[str, float] = Field(default_factory=dict)


class SchemaRefreshRequest(BaseModel):
    tenant_id: str = Field(..., pattern=TENANT_ID_PATTERN)


class SchemaRefreshResponse(BaseModel):
    tenant_id: str
    table_count: int
    domains: list[str]
    indexed_at: str


def create_app(agent: DataAgent | None = None) -> FastAPI:
    """Build the API app around ``agent`` (default: configured from DA_* variables)."""
    agent = agent or DataAgent(AgentConfig.from_env())

    app = FastAPI(title="Data Agent API", version=__version__)
    app.state.agent = agent

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        db_path = agent.config.db_path
        return {
            "status": "ok",
            "version": __version__,
            "db_exists": Path(db_path).exists(),
            "llm": get_current_config(),
        }

    @app.post("/ask", response_model=AskResponse)
    def ask(request: AskRequest):
        """Answer a message within a conversation.

        Runs in the server's worker threads; turns of different conversations
        proceed independently.
        """
        outcome = agent.answer(
            request.message,
            tenant_id=request.tenant_id,
            conversation_id=request.conversation_id,
            history=[turn.model_dump() for turn in request.history],
            resolved_references=request.resolved_references,
            domain=request.domain,
        )
        return AskResponse(
            turn_id=outcome.turn_id,
            success=outcome.success,
            formatted_message=outcome.formatted_message,
            narrative_summary=outcome.narrative_summary,
            visualization=outcome.visualization,
            needs_clarification=outcome.needs_clarification,
            clarification=outcome.clarification,
            row_count=outcome.row_count,
            error_kind=outcome.error_kind,
            caveat=outcome.caveat,
            stage_timings=outcome.stage_timings,
        )

    @app.post("/schema/refresh", response_model=SchemaRefreshResponse)
    def refresh_schema(request: SchemaRefreshRequest):
        """Drop the tenant's cached Schema Map and rebuild it."""
        try:
            schema_map = agent.refresh_schema(request.tenant_id)
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except duckdb.Error as e:
            logger.error("Schema refresh failed: %s", e)
            raise HTTPException(status_code=503, detail="Schema could not be read")

        return SchemaRefreshResponse(
            tenant_id=request.tenant_id,
            table_count=len(schema_map.tables),
            domains=[d.value for d in schema_map.get_available_domains()],
            indexed_at=datetime.fromtimestamp(schema_map.indexed_at, tz=timezone.utc).isoformat(),
        )

    return app
