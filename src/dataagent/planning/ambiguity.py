"""Clarifying questions for ambiguous plans.

When the planner cannot map a message to tables with confidence, the turn
becomes a clarification: no SQL is generated and the user is offered a
question with selectable options when they can be derived.
"""

from dataagent.planning.schema import Clarification, ClarificationOption, QueryPlan
from dataagent.semantic.layer import DEFAULT_SEMANTIC_LAYER, SemanticLayer

DEFAULT_DOMAIN_QUESTION = "Which data area are you interested in?"
NO_TABLES_QUESTION = (
    "I couldn't tell which data you're asking about. "
    "Could you mention what you'd like to look at, for example customers, orders, deals or campaigns?"
)


def build_structured_clarification(
    plan: QueryPlan,
    layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER,
    *,
    question: str | None = None,
) -> Clarification | None:
    """
    Build a clarifying question for an ambiguous plan.

    Args:
        plan: The (ambiguous) plan
        layer: Semantic layer for domain descriptions
        question: Clarifying question text, if the planner produced one

    Returns:
        Clarification with a leading "All of the above" option when two or
        more candidate domains are known; a free-form question when none
        are; None when the plan is not ambiguous.
    """
    if not plan.ambiguous:
        return None

    candidates = [d for d in plan.candidate_domains if d in layer.domains]
    if len(candidates) >= 2:
        options = [
            ClarificationOption(label="All of the above", value="all", description="Search across all data domains")
        ]
        for domain in candidates:
            options.append(
                ClarificationOption(
                    label=domain.capitalize(),
                    value=domain,
                    description=layer.domains[domain].description,
                )
            )
        return Clarification(
            question=question or DEFAULT_DOMAIN_QUESTION,
            options=options,
            allow_freeform=True,
            reason="domain_ambiguous",
        )

    return Clarification(
        question=question or NO_TABLES_QUESTION,
        options=[],
        allow_freeform=True,
        reason="no_tables",
    )


def clarification_to_text(clarification: Clarification) -> str:
    """Render a clarification for plain-text channels."""
    lines = [clarification.question]
    for i, option in enumerate(clarification.options, start=1):
        suffix = f" - {option.description}" if option.description else ""
        lines.append(f"{i}. {option.label}{suffix}")
    return "\n".join(lines)


def option_for_answer(clarification: Clarification, answer: str) -> ClarificationOption | None:
    """Match a user's reply ("2", "crm", "Crm") to one of the options."""
    text = answer.strip()
    if text.isdigit():
        index = int(text) - 1
        if 0 <= index < len(clarification.options):
            return clarification.options[index]
        return None
    lower = text.lower()
    for option in clarification.options:
        if lower in (option.value.lower(), option.label.lower()):
            return option
    return None
