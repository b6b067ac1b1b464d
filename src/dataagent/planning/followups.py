"""Deterministic follow-up detection.

Pattern matching for the turns that do not need a language model:
refinements of the previous statement ("sort by date", "only show the
first 3") and pronoun follow-ups ("what are their zip codes?"). Also hosts
the domain keyword scoring the planner uses to spot pivots and single-domain
questions.
"""

import re
from typing import Any

from dataagent.planning.conversation import ConversationState

# Only strong keywords; "customer" alone could be ecommerce or CRM
DOMAIN_PATTERNS: dict[str, list[re.Pattern]] = {
    "ecommerce": [
        re.compile(r"\b(?:ecom(?:merce)?|shopify|b2c)\b", re.I),
        re.compile(r"\border(?:s|ed)?\b", re.I),
        re.compile(r"\b(?:total.?spend|total.?spent|spend(?:ing)?)\b", re.I),
        re.compile(r"\bproducts?\b", re.I),
        re.compile(r"\b(?:purchase[sd]?|bought)\b", re.I),
        re.compile(r"\b(?:cart|shipping|fulfillment|refund(?:s|ed)?)\b", re.I),
        re.compile(r"\b(?:aov|average.?order.?value)\b", re.I),
        re.compile(r"\brevenue\b", re.I),
    ],
    "crm": [
        re.compile(r"\b(?:crm|hubspot|b2b)\b", re.I),
        re.compile(r"\bdeals?\b", re.I),
        re.compile(r"\bpipeline\b", re.I),
        re.compile(r"\bcontacts?\b", re.I),
        re.compile(r"\bcompan(?:y|ies)\b", re.I),
        re.compile(r"\b(?:prospects?|leads?|opportunit(?:y|ies))\b", re.I),
    ],
    "campaigns": [
        re.compile(r"\bcampaigns?\b", re.I),
        re.compile(r"\bemails?\s+(?:sent|send|opened|clicked|bounced)\b", re.I),
        re.compile(r"\b(?:open.?rate|click.?rate|bounce.?rate)\b", re.I),
        re.compile(r"\bnewsletters?\b", re.I),
    ],
    "behavioral": [
        re.compile(r"\bsegment(?:s|ation)?\b", re.I),
        re.compile(r"\blifecycle\b", re.I),
        re.compile(r"\brfm\b", re.I),
        re.compile(r"\b(?:churn(?:ed|ing)?|at.?risk)\b", re.I),
        re.compile(r"\bengagement.?score\b", re.I),
    ],
}

FOLLOW_UP_PRONOUNS = re.compile(r"\b(?:their|them|those|these|they|same|its|his|her)\b", re.I)

REFINEMENT_PATTERNS = [
    re.compile(r"^sort\s+(?:by|it)\s+", re.I),
    re.compile(r"^order\s+by\s+", re.I),
    re.compile(r"^limit\s+to\s+", re.I),
    re.compile(r"^only\s+(?:show|the)\s+(?:first|last|top)\s+", re.I),
    re.compile(r"^show\s+(?:only|just)\s+", re.I),
    re.compile(r"^filter\s+(?:by|for|to)\s+", re.I),
    re.compile(r"^add\s+(?:a\s+)?column\s+", re.I),
    re.compile(r"^include\s+", re.I),
    re.compile(r"^exclude\s+", re.I),
    re.compile(r"^remove\s+", re.I),
    re.compile(r"^group\s+by\s+", re.I),
]


def score_domains(question: str) -> dict[str, int]:
    """Count keyword patterns matched per domain; zero-score domains are omitted."""
    scores: dict[str, int] = {}
    for domain, patterns in DOMAIN_PATTERNS.items():
        count = sum(1 for pattern in patterns if pattern.search(question))
        if count:
            scores[domain] = count
    return scores


def top_domain(scores: dict[str, int]) -> str | None:
    """The leading domain, or None when nothing matched or the top two are close."""
    ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
    if not ranked:
        return None
    if len(ranked) == 1:
        return ranked[0][0]
    if ranked[0][1] - ranked[1][1] <= 1:
        return None
    return ranked[0][0]


def _detect_refinement(lower: str) -> bool:
    return any(pattern.search(lower) for pattern in REFINEMENT_PATTERNS)


def _detect_reference_word(lower: str) -> str | None:
    match = FOLLOW_UP_PRONOUNS.search(lower)
    return match.group(0) if match else None


def classify_followup(question: str, state: ConversationState) -> dict[str, Any]:
    """
    Classify a message against the conversation's previous turn.

    Args:
        question: The new message
        state: The conversation's state

    Returns:
        Classification dict:
        {
            "is_followup": bool,
            "type": "refinement|reference|pivot|new_question",
            "confidence": float (0-1),
            "reference": matched pronoun or None,
            "domain": domain the follow-up should query or None,
        }
    """
    lower = question.lower().strip()
    last = state.last_turn

    if last is None:
        return {"is_followup": False, "type": "new_question", "confidence": 0.9, "reference": None, "domain": None}

    if _detect_refinement(lower):
        return {
            "is_followup": True,
            "type": "refinement",
            "confidence": 0.95,
            "reference": None,
            "domain": last.domain,
        }

    reference = _detect_reference_word(lower)
    if reference:
        leading = top_domain(score_domains(lower))
        if leading is not None and leading != last.domain:
            return {
                "is_followup": True,
                "type": "pivot",
                "confidence": 0.85,
                "reference": reference,
                "domain": leading,
            }
        return {
            "is_followup": True,
            "type": "reference",
            "confidence": 0.9,
            "reference": reference,
            "domain": last.domain,
        }

    return {"is_followup": False, "type": "new_question", "confidence": 0.6, "reference": None, "domain": None}


def resolve_references(question: str, state: ConversationState, reference: str | None) -> dict[str, Any]:
    """Map the matched pronoun to concrete values, else carry the active entities."""
    resolved: dict[str, Any] = {}
    values = state.resolve_reference(question)
    if values and reference:
        resolved[reference.lower()] = values
    if not resolved and state.active_entity_ids:
        resolved["_active_entities"] = list(state.active_entity_ids)
    return resolved
