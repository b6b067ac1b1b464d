"""dataagent - conversational analytics over a multi-domain business schema."""

__version__ = "0.1.0"
