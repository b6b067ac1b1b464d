"""Semantic layer: business vocabulary over the schema."""
