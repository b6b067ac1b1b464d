"""SQL generation, guardrails and guarded execution."""
