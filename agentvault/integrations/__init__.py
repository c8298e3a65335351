"""Provider adapters invoked by the capability router."""

import httpx

from agentvault.config import RouterSettings
from agentvault.integrations.automation import (
    ArcadeIntegration,
    CloudProviderIntegration,
    MCPJungleIntegration,
    OpenOpsIntegration,
)
from agentvault.integrations.base import (
    HttpIntegration,
    Integration,
    IntegrationError,
    IntegrationResult,
)
from agentvault.integrations.media import FalIntegration, ModelsLabIntegration
from agentvault.integrations.openrouter import OpenRouterIntegration


def default_integrations(
    settings: RouterSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Integration]:
    """Build the adapter for every routable connection type."""
    settings = settings or RouterSettings()
    timeout = float(settings.execution_timeout_seconds)
    return {
        "openrouter": OpenRouterIntegration(
            transport=transport,
            timeout=timeout,
            default_model=settings.default_model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        ),
        "fal": FalIntegration(transport=transport, timeout=timeout),
        "modelslab": ModelsLabIntegration(transport=transport, timeout=timeout),
        "mcpjungle": MCPJungleIntegration(transport=transport, timeout=timeout),
        "openops": OpenOpsIntegration(transport=transport, timeout=timeout),
        "arcade": ArcadeIntegration(transport=transport, timeout=timeout),
        "aws": CloudProviderIntegration("aws"),
        "azure": CloudProviderIntegration("azure"),
        "gcp": CloudProviderIntegration("gcp"),
    }


__all__ = [
    "ArcadeIntegration",
    "CloudProviderIntegration",
    "FalIntegration",
    "HttpIntegration",
    "Integration",
    "IntegrationError",
    "IntegrationResult",
    "MCPJungleIntegration",
    "ModelsLabIntegration",
    "OpenOpsIntegration",
    "OpenRouterIntegration",
    "default_integrations",
]
