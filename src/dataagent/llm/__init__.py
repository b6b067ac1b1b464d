"""LLM provider routing."""
