"""Fire-and-forget telemetry for answered turns.

One record per turn: model, input/output size, latency, retrieved context,
tool outcomes and an estimated cost. Records are handed to a single
background worker; a failing sink is logged and never reaches the turn.
"""

import json
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# USD per million tokens (input, output); local models are free
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
}


def estimate_cost(model: str, input_chars: int, output_chars: int) -> float:
    """Rough USD cost from character counts."""
    input_rate, output_rate = MODEL_PRICING.get(model, (0.0, 0.0))
    input_tokens = input_chars / CHARS_PER_TOKEN
    output_tokens = output_chars / CHARS_PER_TOKEN
    return round((input_tokens * input_rate + output_tokens * output_rate) / 1_000_000, 6)


class TelemetryRecord(BaseModel):
    """Cost and latency facts for one turn."""

    turn_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"))
    tenant_id: str
    conversation_id: str
    model: str = ""
    input_chars: int = 0
    output_chars: int = 0
    latency_ms: float = 0.0
    context_ids: list[str] = Field(default_factory=list)
    tool_outcomes: dict[str, Any] = Field(default_factory=dict)
    estimated_cost_usd: float = 0.0


class TelemetrySink:
    """Base sink: ``emit`` returns immediately and never raises."""

    def __init__(self):
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="telemetry")

    def emit(self, record: TelemetryRecord) -> None:
        try:
            self._pool.submit(self._safe_write, record)
        except RuntimeError as e:
            # Pool already shut down
            logger.warning("Telemetry dropped for turn %s: %s", record.turn_id, e)

    def _safe_write(self, record: TelemetryRecord) -> None:
        try:
            self.write(record)
        except Exception as e:
            logger.warning("Telemetry sink failed for turn %s: %s", record.turn_id, e)

    def write(self, record: TelemetryRecord) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        """Block until every submitted record has been handled."""
        self._pool.submit(lambda: None).result()

    def close(self) -> None:
        self._pool.shutdown(wait=True)


class NullTelemetrySink(TelemetrySink):
    """Discards records."""

    def emit(self, record: TelemetryRecord) -> None:
        return None

    def write(self, record: TelemetryRecord) -> None:
        return None


class JsonlTelemetrySink(TelemetrySink):
    """Appends one JSON line per record."""

    def __init__(self, path: Path | str):
        super().__init__()
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def write(self, record: TelemetryRecord) -> None:
        line = json.dumps(record.model_dump(), default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


def create_sink(path: Path | str | None) -> TelemetrySink:
    return JsonlTelemetrySink(path) if path else NullTelemetrySink()
