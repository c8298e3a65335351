"""HTTP middleware for the AgentVault API."""
