"""Per-conversation state for multi-turn questions.

Tracks what the planner needs to resolve "their", "those", "them":
active entity ids, values extracted from the last result, the current
domain, and prior statements for follow-up edits. Each conversation owns
its own ``ConversationState``; the registry never hands the same object to
two conversations.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from dataagent.planning.schema import Clarification

MAX_TURN_HISTORY = 20
CONVERSATION_TTL_SECONDS = 30 * 60

ENTITY_ID_COLUMNS = ("id", "customer_id", "contact_id", "company_id", "deal_id")

KEY_VALUE_MARKERS = (
    "zip",
    "city",
    "province",
    "state",
    "country",
    "email",
    "name",
    "stage",
    "status",
    "type",
    "category",
)

REFERENCE_WORDS = ("their", "them", "those", "these", "same")


@dataclass
class QueryTurn:
    """One answered question, kept for follow-ups."""

    question: str
    sql: str
    tables: list[str]
    domain: str
    entity_ids: list[str] = field(default_factory=list)
    result_values: dict[str, list[Any]] = field(default_factory=dict)
    result_summary: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class ConversationState:
    conversation_id: str
    tenant_id: str
    turns: list[QueryTurn] = field(default_factory=list)
    current_domain: str | None = None
    active_entity_type: str | None = None
    active_entity_ids: list[str] = field(default_factory=list)
    resolved_references: dict[str, Any] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.time)

    # Set while a clarifying question is waiting for an answer
    pending_question: str | None = None
    pending_clarification: Clarification | None = None

    @property
    def has_history(self) -> bool:
        return len(self.turns) > 0

    @property
    def last_turn(self) -> QueryTurn | None:
        return self.turns[-1] if self.turns else None

    def record_turn(self, turn: QueryTurn) -> None:
        """Append a successful turn and move the active context to it."""
        self.turns.append(turn)
        if len(self.turns) > MAX_TURN_HISTORY:
            self.turns = self.turns[-MAX_TURN_HISTORY:]

        self.current_domain = turn.domain
        self.active_entity_ids = list(turn.entity_ids)
        if turn.tables:
            self.active_entity_type = turn.tables[0]
        self.last_activity = time.time()

    def clear_pending(self) -> None:
        self.pending_question = None
        self.pending_clarification = None

    def fold_references(self, references: dict[str, Any]) -> None:
        """Carry a plan's resolved references into later turns.

        Append-only: existing keys are overwritten with the newer value,
        nothing is ever removed.
        """
        self.resolved_references.update(references)

    def resolve_reference(self, text: str) -> list[Any] | None:
        """Resolve a pronoun phrase to concrete values from the last turn.

        "those zip codes" resolves to the extracted zip values; any other
        reference falls back to the active entity ids.
        """
        last = self.last_turn
        if last is None:
            return None

        lower = text.lower()
        if not any(word in lower for word in REFERENCE_WORDS):
            return None

        for key, values in last.result_values.items():
            if values and _mentions_column(lower, key):
                return values

        if self.active_entity_ids:
            return list(self.active_entity_ids)
        return None

    def context_summary(self) -> str | None:
        """Compact description of prior turns for prompts."""
        if not self.turns:
            return None

        parts = [f"Conversation has {len(self.turns)} prior query turn(s)."]
        if self.current_domain:
            parts.append(f"Current domain: {self.current_domain}")
        if self.active_entity_ids:
            preview = ", ".join(self.active_entity_ids[:5])
            more = "..." if len(self.active_entity_ids) > 5 else ""
            parts.append(f"Active entity IDs ({len(self.active_entity_ids)}): {preview}{more}")

        recent = self.turns[-3:]
        offset = len(self.turns) - len(recent)
        for i, turn in enumerate(recent, start=offset + 1):
            parts.append(f'Turn {i}: "{turn.question}" -> {", ".join(turn.tables)} ({turn.domain})')
            if turn.result_summary:
                parts.append(f"  Result: {turn.result_summary}")
            keys = [k for k, v in turn.result_values.items() if v]
            if keys:
                listed = ", ".join(f"{k} ({len(turn.result_values[k])} values)" for k in keys)
                parts.append(f"  Extractable values: {listed}")

        return "\n".join(parts)


def _mentions_column(text: str, column: str) -> bool:
    """'zip' matches "zip codes"; 'first_name' matches "first names"."""
    lower = column.lower()
    return lower in text or lower.replace("_", " ") in text


# =============================================================================
# Extraction from result rows
# =============================================================================

def _as_text_id(value: Any) -> str | None:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str) and value:
        return value
    return None


def extract_entity_ids(rows: list[dict[str, Any]]) -> list[str]:
    """One identifier per row, from the first id-like column that has one."""
    ids: list[str] = []
    for row in rows:
        for column in ENTITY_ID_COLUMNS:
            value = _as_text_id(row.get(column))
            if value:
                ids.append(value)
                break
    return ids


def extract_key_values(rows: list[dict[str, Any]]) -> dict[str, list[Any]]:
    """Values users tend to refer back to (zip codes, names, stages, ...)."""
    if not rows:
        return {}

    values: dict[str, list[Any]] = {}
    for key in rows[0]:
        lower = key.lower()
        if not any(marker in lower for marker in KEY_VALUE_MARKERS):
            continue
        column_values = [row.get(key) for row in rows if row.get(key) is not None]
        if column_values:
            values[key] = column_values
    return values


# =============================================================================
# Registry
# =============================================================================

class ConversationRegistry:
    """Conversation states keyed by (tenant, conversation), with an idle TTL."""

    def __init__(self, *, ttl_seconds: float = CONVERSATION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._states: dict[tuple[str, str], ConversationState] = {}
        self._lock = threading.RLock()

    def get(self, tenant_id: str, conversation_id: str) -> ConversationState:
        """Return the live state for a conversation, creating it if needed."""
        now = time.time()
        key = (tenant_id, conversation_id)
        with self._lock:
            self._evict_expired(now)
            state = self._states.get(key)
            if state is None:
                state = ConversationState(conversation_id=conversation_id, tenant_id=tenant_id)
                self._states[key] = state
            state.last_activity = now
            return state

    def discard(self, tenant_id: str, conversation_id: str) -> None:
        with self._lock:
            self._states.pop((tenant_id, conversation_id), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, s in self._states.items() if now - s.last_activity > self.ttl_seconds]
        for key in expired:
            del self._states[key]
