"""API route modules."""

from agentvault.api.routes import agents, connections, security

__all__ = ["agents", "connections", "security"]
