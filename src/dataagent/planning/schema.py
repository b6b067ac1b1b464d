"""Query plan schema.

A ``QueryPlan`` is built and consumed within one turn. Only its
``resolved_references`` survive, folded forward into the conversation
state by the orchestrator.
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

TurnType = Literal["new", "follow_up", "clarification"]

OutputTemplate = Literal["profile", "ranked_list", "metric_summary", "table", "chart", "auto"]

# Domain names plus "all" for questions spanning several
PlanDomain = Literal["ecommerce", "crm", "campaigns", "behavioral", "identity", "all"]

ReferenceValue = Union[str, int, float, list[Any]]


class ClarificationOption(BaseModel):
    """One selectable answer to a clarifying question."""

    label: str
    value: str
    description: str = ""


class Clarification(BaseModel):
    """A clarifying question surfaced instead of running a query.

    Attributes:
        question: Short conversational question for the user
        options: Selectable answers; empty when none can be derived
        allow_freeform: Whether the user may type their own answer
        reason: Why clarification was needed (domain_ambiguous, no_tables, ...)
    """

    question: str
    options: list[ClarificationOption] = Field(default_factory=list)
    allow_freeform: bool = True
    reason: str = "domain_ambiguous"


class QueryPlan(BaseModel):
    """Structured intent for one turn.

    Attributes:
        turn_type: new question, follow-up on a prior result, or clarification
        intent: One-sentence description of what the user wants
        domain: Business domain to query, or "all"
        ambiguous: True when the message cannot be mapped to tables with confidence
        tables_needed: Tables the statement may read, in priority order
        resolved_references: Conversational referent → resolved values
        expected_count: Row bound implied by phrasing ("top 5" → 5)
        output_template: Explicit presentation override; None or "auto" means none
        edit_instruction: For follow-ups and retries, how to change previous_sql
        previous_sql: Statement being edited
        candidate_domains: Domains the message could refer to when ambiguous
        clarification: Clarifying question when ambiguous
    """

    turn_type: TurnType = "new"
    intent: str = Field(..., min_length=1)
    domain: PlanDomain = "all"
    ambiguous: bool = False
    tables_needed: list[str] = Field(default_factory=list)
    resolved_references: dict[str, ReferenceValue] = Field(default_factory=dict)
    expected_count: Optional[int] = Field(None, ge=1)
    output_template: Optional[OutputTemplate] = None

    edit_instruction: Optional[str] = None
    previous_sql: Optional[str] = None
    candidate_domains: list[str] = Field(default_factory=list)
    clarification: Optional[Clarification] = None

    @field_validator("tables_needed")
    @classmethod
    def dedupe_tables(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for table in v:
            if table and table not in seen:
                seen.append(table)
        return seen

    @model_validator(mode="after")
    def ambiguous_means_clarification(self) -> "QueryPlan":
        """Ambiguous plans and clarification turns are the same thing."""
        if self.ambiguous and self.turn_type != "clarification":
            self.turn_type = "clarification"
        if self.turn_type == "clarification":
            self.ambiguous = True
        return self

    @property
    def template_override(self) -> Optional[str]:
        if self.output_template in (None, "auto"):
            return None
        return self.output_template

    @property
    def is_edit(self) -> bool:
        return bool(self.previous_sql and self.edit_instruction)

    def with_retry_hint(self, reason: str, executed_sql: str) -> "QueryPlan":
        """Copy of this plan that asks the generator to fix ``executed_sql``."""
        return self.model_copy(
            update={
                "turn_type": "follow_up",
                "edit_instruction": reason,
                "previous_sql": executed_sql,
            }
        )
