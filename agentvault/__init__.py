"""AgentVault: encrypted connection vault and connection-aware execution broker."""

__version__ = "0.1.0"
