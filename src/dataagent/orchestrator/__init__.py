"""Orchestrator module: one conversational turn.

Plan → Execute → Validate → (one corrective re-execution) → Present
"""

from dataagent.orchestrator.runtime import AgentConfig, DataAgent, TurnOutcome, TurnState

__all__ = ["AgentConfig", "DataAgent", "TurnOutcome", "TurnState"]
