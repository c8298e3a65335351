"""HTTP API for AgentVault."""
