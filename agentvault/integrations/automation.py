"""Delegation, workflow, and infrastructure adapters.

MCPJungle delegates a task to its agent hub, OpenOps runs a named
workflow, Arcade deploys infrastructure from a template. Each accepts an
``endpoint`` credential override for self-hosted installs.
"""

from collections.abc import Mapping
from typing import Any

from agentvault.integrations.base import HttpIntegration, IntegrationResult, bearer, endpoint

MCPJUNGLE_BASE_URL = "https://hub.mcpjungle.com"
OPENOPS_BASE_URL = "https://api.openops.cloud"
ARCADE_BASE_URL = "https://api.arcade.dev"


class MCPJungleIntegration(HttpIntegration):
    name = "mcpjungle"

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult:
        base = endpoint(credentials, MCPJUNGLE_BASE_URL)
        body = await self._post_json(
            f"{base}/api/v1/delegate",
            {"task": input, "hub": credentials.get("hub") or "default", "options": dict(options)},
            credentials,
            headers=bearer(credentials["apiKey"]),
        )
        return IntegrationResult(
            success=True,
            type="delegation",
            text=body.get("output"),
            metadata={
                "provider": self.name,
                "delegation_id": body.get("id"),
                "execution_time": body.get("executionTime"),
            },
        )


class OpenOpsIntegration(HttpIntegration):
    """Runs ``options['workflow']`` (default 'general') with the input as a parameter."""

    name = "openops"

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult:
        base = endpoint(credentials, OPENOPS_BASE_URL)
        workflow = options.get("workflow") or "general"
        params = {k: v for k, v in options.items() if k != "workflow"}
        body = await self._post_json(
            f"{base}/api/v1/workflows/{workflow}/run",
            {
                "workspace": credentials.get("workspace") or "default",
                "params": {"input": input, **params},
            },
            credentials,
            headers=bearer(credentials["apiKey"]),
        )
        status = body.get("status")
        return IntegrationResult(
            success=status == "completed",
            type="workflow",
            text=body.get("output") or f"Workflow {workflow} executed",
            metadata={
                "provider": self.name,
                "execution_id": body.get("id"),
                "workflow": workflow,
                "status": status,
            },
        )


class ArcadeIntegration(HttpIntegration):
    name = "arcade"

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult:
        base = endpoint(credentials, ARCADE_BASE_URL)
        config = {k: v for k, v in options.items() if k != "template"}
        body = await self._post_json(
            f"{base}/api/v1/deployments",
            {
                "project": credentials.get("project") or "default",
                "template": options.get("template") or "auto-detect",
                "config": {"description": input, **config},
            },
            credentials,
            headers=bearer(credentials["apiKey"]),
        )
        endpoints = body.get("endpoints") or []
        status = body.get("status")
        return IntegrationResult(
            success=status == "deployed",
            type="infrastructure",
            text=f"Infrastructure deployed: {', '.join(endpoints) if endpoints else 'No endpoints'}",
            metadata={
                "provider": self.name,
                "deployment_id": body.get("id"),
                "status": status,
                "endpoints": endpoints,
            },
        )


class CloudProviderIntegration:
    """Placeholder for aws/azure/gcp: acknowledges the operation without a call."""

    def __init__(self, provider: str) -> None:
        self.name = provider

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult:
        return IntegrationResult(
            success=True,
            type="cloud",
            text=f"{self.name} operation completed",
            metadata={"provider": self.name, "operation": options.get("operation") or "general"},
        )
