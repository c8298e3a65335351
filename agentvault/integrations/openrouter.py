"""OpenRouter chat completions adapter."""

from collections.abc import Mapping
from typing import Any

import httpx

from agentvault.integrations.base import (
    DEFAULT_REQUEST_TIMEOUT,
    HttpIntegration,
    IntegrationError,
    IntegrationResult,
    bearer,
)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_SYSTEM_MESSAGE = "You are a helpful AI assistant."


class OpenRouterIntegration(HttpIntegration):
    """Calls the OpenAI-compatible /chat/completions endpoint.

    Options honoured: ``model``, ``system_message``, ``max_tokens``,
    ``temperature``, ``task_type``. Defaults come from RouterSettings.
    """

    name = "openrouter"

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        default_model: str = "openai/gpt-4o-mini",
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> None:
        super().__init__(transport=transport, timeout=timeout)
        self.default_model = default_model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult:
        model = options.get("model") or self.default_model
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": options.get("system_message") or DEFAULT_SYSTEM_MESSAGE},
                {"role": "user", "content": input},
            ],
            "max_tokens": options.get("max_tokens") or self.max_tokens,
            "temperature": options.get("temperature", self.temperature),
        }
        body = await self._post_json(
            f"{OPENROUTER_BASE_URL}/chat/completions",
            payload,
            credentials,
            headers=bearer(credentials["apiKey"]),
        )
        try:
            text = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise IntegrationError(self.name, "response had no completion choices") from None

        metadata: dict[str, Any] = {"provider": self.name, "model": model, "usage": body.get("usage")}
        if options.get("task_type"):
            metadata["task_type"] = options["task_type"]
        return IntegrationResult(success=True, type="llm", text=text, metadata=metadata)
