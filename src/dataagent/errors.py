"""Error taxonomy for the query pipeline.

Each stage converts its own failures into a typed, failed ``QueryResult``;
these exceptions mark where a failure originated and carry enough detail
for logging. Only ``DataAgent.answer`` catches what escapes a stage.
"""


class DataAgentError(Exception):
    """Base class for pipeline errors."""

    kind = "error"

    def __init__(self, message: str, *, stage: str = "", details: dict | None = None):
        super().__init__(message)
        self.stage = stage
        self.details = details or {}


class PlanningAmbiguous(DataAgentError):
    """The message cannot be mapped to tables with confidence."""

    kind = "planning_ambiguous"

    def __init__(self, message: str, *, candidate_domains: list[str] | None = None, **kwargs):
        super().__init__(message, stage="plan", **kwargs)
        self.candidate_domains = candidate_domains or []


class GenerationError(DataAgentError):
    """Generated SQL is missing, invalid, or not allowed to run."""

    kind = "generation"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "generate")
        super().__init__(message, **kwargs)


class ExecutionError(DataAgentError):
    """The database rejected the statement or it timed out."""

    kind = "execution"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "execute")
        super().__init__(message, **kwargs)


class ValidationRetryExhausted(DataAgentError):
    """The single retry still produced an under-fetched result."""

    kind = "validation_retry_exhausted"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "validate")
        super().__init__(message, **kwargs)


class PresentationFallback(DataAgentError):
    """No template matched; the presenter falls back to a table."""

    kind = "presentation_fallback"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "present")
        super().__init__(message, **kwargs)


class LLMUnavailable(DataAgentError):
    """No language model provider is configured."""

    kind = "llm_unavailable"


class TurnCancelled(DataAgentError):
    """The enclosing request was cancelled; partial results are discarded."""

    kind = "cancelled"


USER_FAILURE_MESSAGE = (
    "Sorry, I wasn't able to retrieve that data. "
    "Could you try rephrasing your question or asking about a different aspect of the data?"
)

USER_TIMEOUT_MESSAGE = (
    "Sorry, that question took too long to answer. "
    "Could you try narrowing it down, for example to a shorter time range or fewer records?"
)


def user_message_for(error_kind: str | None) -> str:
    """Return the apologetic, SQL-free message shown for a failed turn."""
    if error_kind == "timeout":
        return USER_TIMEOUT_MESSAGE
    return USER_FAILURE_MESSAGE
