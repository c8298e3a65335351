"""Command-line interface for AgentVault."""
