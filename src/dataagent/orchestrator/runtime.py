"""Orchestrator runtime: one conversational turn, end to end.

Runs the stages in order:
Plan → Execute → Validate → (one corrective re-execution) → Present

Key features:
- Bounded retry: at most one re-execution, only for under-fetched results
- Ambiguous plans become clarification turns; no SQL is generated
- Every failure ends as a plain apologetic message; SQL and tracebacks stay in logs
- Cooperative cancellation between stages; cancelled turns leave no state behind
- Fire-and-forget telemetry per turn
"""

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from dataagent.catalog.schema_map import SCHEMA_CACHE_TTL_SECONDS, SchemaMap, SchemaMapCache
from dataagent.errors import (
    DataAgentError,
    PlanningAmbiguous,
    TurnCancelled,
    ValidationRetryExhausted,
    user_message_for,
)
from dataagent.explain.formatter import format_results, generate_result_summary
from dataagent.explain.presenter import present_results
from dataagent.execution.executor import QueryExecutor
from dataagent.llm.router import llm_enabled, resolve_model
from dataagent.planning.ambiguity import clarification_to_text, option_for_answer
from dataagent.planning.conversation import (
    ConversationRegistry,
    ConversationState,
    QueryTurn,
    extract_entity_ids,
    extract_key_values,
)
from dataagent.planning.planner import QueryPlanner
from dataagent.planning.schema import Clarification, QueryPlan
from dataagent.results import QueryResult, Visualization
from dataagent.semantic.layer import DEFAULT_SEMANTIC_LAYER, SemanticLayer
from dataagent.sql.generator import SQLGenerator
from dataagent.sql.guardrails import GuardrailConfig, check_tenant_id, has_row_filters
from dataagent.telemetry import TelemetryRecord, TelemetrySink, create_sink, estimate_cost

logger = logging.getLogger(__name__)

RETRY_CAVEAT = (
    "_Note: this may not include every row you asked for. "
    "Try asking again with a more specific question._"
)
EMPTY_RESULT_CAVEAT = "_No rows matched these filters. They may be too restrictive; try broadening the question._"
MAX_SUMMARY_CHARS = 500


class TurnState(str, Enum):
    PLANNED = "planned"
    CLARIFIED = "clarified"
    EXECUTED = "executed"
    VALIDATED_OK = "validated_ok"
    VALIDATED_RETRY = "validated_retry"
    RE_EXECUTED = "re_executed"
    PRESENTED = "presented"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AgentConfig:
    """Configuration for the data agent."""

    db_path: Path | str = "data/dataagent.duckdb"

    # Guardrails
    query_timeout_seconds: float = 30.0
    default_limit: int = 100
    max_result_rows: int = 1000

    # None lets DA_LLM_PROVIDER decide
    use_llm: bool | None = None

    schema_ttl_seconds: float = SCHEMA_CACHE_TTL_SECONDS
    telemetry_path: str | None = None

    @classmethod
    def from_env(cls, **overrides: Any) -> "AgentConfig":
        """Read DA_* environment variables; keyword overrides win."""
        values: dict[str, Any] = {
            "db_path": os.environ.get("DA_DB_PATH", cls.db_path),
            "query_timeout_seconds": float(
                os.environ.get("DA_QUERY_TIMEOUT_SECONDS", cls.query_timeout_seconds)
            ),
            "telemetry_path": os.environ.get("DA_TELEMETRY_PATH") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def guardrails(self) -> GuardrailConfig:
        return GuardrailConfig(
            default_limit=self.default_limit,
            max_result_rows=self.max_result_rows,
            query_timeout_seconds=self.query_timeout_seconds,
        )


class TurnOutcome(BaseModel):
    """What the conversation boundary returns for one turn."""

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
    states: list[TurnState] = Field(default_factory=list)
    stage_timings: dict[str, float] = Field(default_factory=dict)

    # Diagnostics; never rendered to end users
    sql: str | None = Field(None, exclude=True)
    plan: QueryPlan | None = Field(None, exclude=True)


@dataclass
class _TurnContext:
    """Internal state during one turn."""

    turn_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started: float = field(default_factory=time.perf_counter)
    states: list[TurnState] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)
    plan: QueryPlan | None = None
    retried: bool = False

    def time_stage(self, name: str, start: float) -> None:
        self.timings[name] = round(self.timings.get(name, 0.0) + (time.perf_counter() - start) * 1000, 2)


class DataAgent:
    """Conversational analytics over one DuckDB database.

    Usage:
        agent = DataAgent(AgentConfig.from_env())
        outcome = agent.answer("top 5 customers by spend", tenant_id="org_1", conversation_id="c1")
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER,
        planner: QueryPlanner | None = None,
        executor: QueryExecutor | None = None,
        schema_cache: SchemaMapCache | None = None,
        conversations: ConversationRegistry | None = None,
        telemetry: TelemetrySink | None = None,
    ):
        self.config = config or AgentConfig.from_env()
        self.layer = layer
        guardrails = self.config.guardrails()

        self.planner = planner or QueryPlanner(layer, use_llm=self.config.use_llm)
        self.executor = executor or QueryExecutor(
            self.config.db_path,
            config=guardrails,
            generator=SQLGenerator(layer, config=guardrails, use_llm=self.config.use_llm),
            layer=layer,
        )
        self.schema_cache = schema_cache or SchemaMapCache(
            self.config.db_path, ttl_seconds=self.config.schema_ttl_seconds
        )
        self.conversations = conversations or ConversationRegistry()
        self.telemetry = telemetry or create_sink(self.config.telemetry_path)

    # -------------------------------------------------------------------------
    # Turn boundary
    # -------------------------------------------------------------------------

    def answer(
        self,
        message: str,
        *,
        tenant_id: str,
        conversation_id: str,
        history: list[dict[str, Any]] | None = None,
        resolved_references: dict[str, Any] | None = None,
        domain: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TurnOutcome:
        """Answer one message.

        Args:
            message: The user's message
            tenant_id: Tenant every statement is scoped to
            conversation_id: Conversation the turn belongs to
            history: Prior turns, for callers that keep history themselves
            resolved_references: Prior resolved references to carry forward
            domain: Domain chosen in answer to a clarifying question
            cancel_event: Set by the caller to cancel the turn

        Returns:
            TurnOutcome; this method does not raise
        """
        ctx = _TurnContext()
        outcome: TurnOutcome | None = None
        try:
            check_tenant_id(tenant_id)
            state = self.conversations.get(tenant_id, conversation_id)
            _seed_state(state, history, resolved_references)
            outcome = self._run(message, tenant_id, state, ctx, domain, cancel_event)
        except TurnCancelled:
            logger.info("Turn %s cancelled", ctx.turn_id)
            ctx.states.append(TurnState.CANCELLED)
            outcome = self._failure(ctx, TurnCancelled.kind)
        except DataAgentError as e:
            logger.warning("Turn %s failed at %s: %s", ctx.turn_id, e.stage or "unknown", e)
            ctx.states.append(TurnState.FAILED)
            outcome = self._failure(ctx, e.kind)
        except Exception:
            logger.exception("Unexpected error in turn %s", ctx.turn_id)
            ctx.states.append(TurnState.FAILED)
            outcome = self._failure(ctx, "internal")
        finally:
            ctx.timings["total_ms"] = round((time.perf_counter() - ctx.started) * 1000, 2)
            if outcome is not None:
                outcome.stage_timings = dict(ctx.timings)
                outcome.states = list(ctx.states)
                self._emit_telemetry(message, tenant_id, conversation_id, ctx, outcome)
        return outcome

    def _run(
        self,
        message: str,
        tenant_id: str,
        state: ConversationState,
        ctx: _TurnContext,
        domain: str | None,
        cancel_event: threading.Event | None,
    ) -> TurnOutcome:
        question, domain_hint = self._resolve_clarification_answer(state, message, domain)
        schema_map = self.schema_cache.get(tenant_id)

        # Plan
        _checkpoint(cancel_event)
        start = time.perf_counter()
        plan = self.planner.plan(question, state, schema_map, domain_hint=domain_hint)
        ctx.time_stage("plan_ms", start)
        ctx.plan = plan
        ctx.states.append(TurnState.PLANNED)

        if plan.ambiguous:
            return self._clarify(question, state, plan, ctx)

        # Execute
        _checkpoint(cancel_event)
        result = self._execute(plan, schema_map, tenant_id, state, ctx)
        ctx.states.append(TurnState.EXECUTED)
        if not result.success:
            ctx.states.append(TurnState.FAILED)
            logger.info("Turn %s failed: %s (%s)", ctx.turn_id, result.error, result.error_kind)
            state.clear_pending()
            return self._failure(ctx, result.error_kind, sql=result.sql)

        # Validate and present
        _checkpoint(cancel_event)
        start = time.perf_counter()
        verdict = present_results(result, plan, schema_map)
        ctx.time_stage("present_ms", start)
        caveat = None

        if verdict.needs_retry:
            ctx.states.append(TurnState.VALIDATED_RETRY)
            logger.info("Turn %s under-fetched, retrying once: %s", ctx.turn_id, verdict.reason)
            _checkpoint(cancel_event)
            retry_plan = plan.with_retry_hint(verdict.reason or "", result.sql)
            retried = self._execute(retry_plan, schema_map, tenant_id, state, ctx)
            ctx.retried = True
            ctx.states.append(TurnState.RE_EXECUTED)

            _checkpoint(cancel_event)
            start = time.perf_counter()
            still_short = True
            if retried.success and retried.data:
                retry_verdict = present_results(retried, retry_plan, schema_map)
                still_short = retry_verdict.needs_retry
                result, plan = retried, retry_plan
                ctx.plan = plan
            if still_short:
                exhausted = ValidationRetryExhausted(verdict.reason or "Result still under-fetched")
                logger.info("Turn %s: %s", ctx.turn_id, exhausted)
                caveat = RETRY_CAVEAT
            ctx.time_stage("present_ms", start)
        else:
            ctx.states.append(TurnState.VALIDATED_OK)
            if not result.data and has_row_filters(result.sql or ""):
                caveat = EMPTY_RESULT_CAVEAT

        start = time.perf_counter()
        result.formatted_message = format_results(result.data, schema_map, plan.tables_needed)
        ctx.time_stage("present_ms", start)
        ctx.states.append(TurnState.PRESENTED)

        _checkpoint(cancel_event)
        state.clear_pending()
        self._record(question, state, plan, result)

        formatted = result.formatted_message
        if caveat:
            formatted = f"{formatted}\n\n{caveat}"
        return TurnOutcome(
            turn_id=ctx.turn_id,
            success=True,
            formatted_message=formatted,
            narrative_summary=result.narrative_summary,
            visualization=result.visualization,
            row_count=result.row_count,
            error_kind=ValidationRetryExhausted.kind if caveat == RETRY_CAVEAT else None,
            caveat=caveat,
            sql=result.sql,
            plan=plan,
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _execute(
        self,
        plan: QueryPlan,
        schema_map: SchemaMap,
        tenant_id: str,
        state: ConversationState,
        ctx: _TurnContext,
    ) -> QueryResult:
        start = time.perf_counter()
        result = self.executor.execute(
            plan,
            schema_map,
            tenant_id,
            entity_type=state.active_entity_type,
            context_summary=state.context_summary(),
        )
        ctx.time_stage("execute_ms", start)
        return result

    def _clarify(
        self,
        question: str,
        state: ConversationState,
        plan: QueryPlan,
        ctx: _TurnContext,
    ) -> TurnOutcome:
        ctx.states.append(TurnState.CLARIFIED)
        clarification = plan.clarification
        state.pending_question = question
        state.pending_clarification = clarification
        logger.info("Turn %s needs clarification (candidates=%s)", ctx.turn_id, plan.candidate_domains)
        text = clarification_to_text(clarification) if clarification else "Could you tell me more about what you're looking for?"
        return TurnOutcome(
            turn_id=ctx.turn_id,
            success=True,
            formatted_message=text,
            needs_clarification=True,
            clarification=clarification,
            error_kind=PlanningAmbiguous.kind,
            plan=plan,
        )

    def _resolve_clarification_answer(
        self,
        state: ConversationState,
        message: str,
        domain: str | None,
    ) -> tuple[str, str | None]:
        """Turn an answer to a pending clarifying question back into the original question.

        Leaves the pending question in place; it is dropped once the turn completes,
        so a cancelled turn can still be answered again.
        """
        pending = state.pending_clarification
        question = state.pending_question
        if question is None:
            return message, domain

        if domain:
            return question, domain
        if pending is not None:
            option = option_for_answer(pending, message)
            if option is not None:
                return question, option.value
        # A free-form reply is a new question
        return message, None

    def _record(
        self,
        question: str,
        state: ConversationState,
        plan: QueryPlan,
        result: QueryResult,
    ) -> None:
        """Move conversation context forward after a successful turn."""
        state.fold_references(plan.resolved_references)
        if not result.data:
            return
        state.record_turn(
            QueryTurn(
                question=question,
                sql=result.sql,
                tables=list(plan.tables_needed),
                domain=plan.domain,
                entity_ids=extract_entity_ids(result.data),
                result_values=extract_key_values(result.data),
                result_summary=generate_result_summary(result.data, question)[:MAX_SUMMARY_CHARS],
            )
        )

    def _failure(self, ctx: _TurnContext, error_kind: str | None, *, sql: str | None = None) -> TurnOutcome:
        return TurnOutcome(
            turn_id=ctx.turn_id,
            success=False,
            formatted_message=user_message_for(error_kind),
            error_kind=error_kind,
            sql=sql,
            plan=ctx.plan,
        )

    def _emit_telemetry(
        self,
        message: str,
        tenant_id: str,
        conversation_id: str,
        ctx: _TurnContext,
        outcome: TurnOutcome,
    ) -> None:
        model = resolve_model("generator") if llm_enabled() and self.config.use_llm is not False else "template"
        output = outcome.narrative_summary or outcome.formatted_message
        record = TelemetryRecord(
            turn_id=ctx.turn_id,
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            model=model,
            input_chars=len(message),
            output_chars=len(output),
            latency_ms=ctx.timings.get("total_ms", 0.0),
            context_ids=list(ctx.plan.tables_needed) if ctx.plan else [],
            tool_outcomes={
                "states": [s.value for s in ctx.states],
                "success": outcome.success,
                "row_count": outcome.row_count,
                "error_kind": outcome.error_kind,
                "retried": ctx.retried,
            },
            estimated_cost_usd=estimate_cost(model, len(message), len(output)),
        )
        self.telemetry.emit(record)

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def refresh_schema(self, tenant_id: str | None = None) -> SchemaMap | None:
        """Drop cached Schema Maps; rebuild immediately for ``tenant_id``."""
        self.schema_cache.invalidate(tenant_id)
        if tenant_id is None:
            return None
        return self.schema_cache.get(tenant_id)

    def close(self) -> None:
        self.telemetry.close()

    def __enter__(self) -> "DataAgent":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _checkpoint(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TurnCancelled("Turn cancelled by caller")


def _seed_state(
    state: ConversationState,
    history: list[dict[str, Any]] | None,
    resolved_references: dict[str, Any] | None,
) -> None:
    """Load caller-supplied history into a fresh conversation state."""
    if history and not state.has_history:
        for item in history:
            if not item.get("question") or not item.get("sql"):
                continue
            state.record_turn(
                QueryTurn(
                    question=item["question"],
                    sql=item["sql"],
                    tables=list(item.get("tables") or []),
                    domain=item.get("domain") or "all",
                    entity_ids=[str(v) for v in item.get("entity_ids") or []],
                    result_values=dict(item.get("result_values") or {}),
                    result_summary=item.get("result_summary") or "",
                )
            )
    if resolved_references:
        state.fold_references(resolved_references)
