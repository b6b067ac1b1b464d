"""Result contracts shared by the executor, presenter and API.

``QueryResult`` is created by the executor and filled in by the presenter.
``Visualization`` is a discriminated union keyed on ``type``; each variant
carries only the payload its renderer needs.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator


class Confidence(str, Enum):
    """Provenance of a returned field."""

    VERIFIED = "verified"  # directly stored, imported or user-entered
    AI_INFERRED = "ai_inferred"  # produced by a behavioral/derived model
    COMPUTED = "computed"  # aggregated by the presenter


class FieldConfidence(BaseModel):
    """Provenance tag for one result column, kept beside the data."""

    field: str = Field(..., description="Column name as it appears in the result rows")
    confidence: Confidence
    source_table: str | None = None
    description: str | None = None


# =============================================================================
# Visualization payloads
# =============================================================================

class ProfileField(BaseModel):
    label: str
    value: str
    confidence: Confidence = Confidence.VERIFIED


class ProfileSection(BaseModel):
    title: str
    fields: list[ProfileField] = Field(default_factory=list)


class MetricCard(BaseModel):
    label: str
    value: str
    confidence: Confidence = Confidence.VERIFIED


class ProfileVisualization(BaseModel):
    """Sectioned rendering of a single record."""

    type: Literal["profile"] = "profile"
    title: str
    profile_sections: list[ProfileSection]


class ChartVisualization(BaseModel):
    """Bar, line or pie chart over the result rows."""

    type: Literal["chart"] = "chart"
    title: str
    chart_type: Literal["bar", "line", "pie"]
    chart_data: list[dict[str, Any]]
    x_key: str
    y_keys: list[str]
    colors: list[str] = Field(default_factory=list)


class MetricVisualization(BaseModel):
    """Big-number cards for aggregate results."""

    type: Literal["metric"] = "metric"
    title: str
    metric_cards: list[MetricCard]


class TableVisualization(BaseModel):
    """Tabular rendering; identifier columns are kept here."""

    type: Literal["table"] = "table"
    title: str
    table_headers: list[str]
    table_rows: list[list[str]]
    table_footer: str | None = None


Visualization = Annotated[
    Union[ProfileVisualization, ChartVisualization, MetricVisualization, TableVisualization],
    Field(discriminator="type"),
]


# =============================================================================
# Query result
# =============================================================================

class QueryResult(BaseModel):
    """Outcome of one executed (or rejected) statement.

    Single-turn state: the presenter mutates ``narrative_summary`` and
    ``visualization`` in place and nothing caches the object afterwards.
    """

    success: bool
    sql: str = ""
    data: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: float = 0.0
    field_confidence: list[FieldConfidence] = Field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    # Filled by the formatter / presenter
    formatted_message: str | None = None
    narrative_summary: str | None = None
    visualization: Visualization | None = None

    warnings: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_row_count(self) -> "QueryResult":
        """A successful result reports exactly the rows it carries."""
        if self.success and len(self.data) != self.row_count:
            raise ValueError(
                f"row_count ({self.row_count}) does not match data length ({len(self.data)})"
            )
        return self

    @property
    def columns(self) -> list[str]:
        return list(self.data[0].keys()) if self.data else []

    def confidence_map(self) -> dict[str, Confidence]:
        return {fc.field: fc.confidence for fc in self.field_confidence}

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        error_kind: str,
        sql: str = "",
        execution_time_ms: float = 0.0,
    ) -> "QueryResult":
        """Build a terminal failed result."""
        return cls(
            success=False,
            sql=sql,
            error=error,
            error_kind=error_kind,
            execution_time_ms=execution_time_ms,
        )
