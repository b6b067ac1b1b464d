"""HTTP API for the data agent."""

from dataagent.api.server import create_app

__all__ = ["create_app"]
