"""Turn planning: plans, conversation state, follow-ups and clarifications."""
