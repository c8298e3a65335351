"""Integration contract shared by every provider adapter.

An integration turns decrypted credentials plus the user's input into one
provider call and an IntegrationResult. Adapters are thin: they know the
provider's endpoint and payload shape, nothing about connections, scopes,
or routing.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from agentvault.utils.redaction import sanitize_error_message, scrub_values

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 60.0


@dataclass(frozen=True)
class IntegrationResult:
    """Normalized outcome of one provider call.

    Attributes:
        success: Whether the provider reported success.
        type: Result family ('llm', 'media', 'delegation', 'workflow',
            'infrastructure', 'cloud').
        text: Human-readable output, if any.
        media: URLs or descriptors of generated media.
        metadata: Provider bookkeeping (ids, model, usage). Never credentials.
    """

    success: bool
    type: str
    text: str | None = None
    media: list[Any] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class IntegrationError(Exception):
    """A provider call failed. The message is already scrubbed of credentials."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class Integration(Protocol):
    """Provider adapter contract."""

    name: str

    async def invoke(
        self,
        credentials: Mapping[str, Any],
        input: str,
        options: Mapping[str, Any],
    ) -> IntegrationResult: ...


class HttpIntegration:
    """Base for adapters that make one JSON-over-HTTP call.

    Args:
        transport: Optional httpx transport (tests inject a fake).
        timeout: Per-request timeout in seconds.
    """

    name = "http"

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._transport = transport
        self._timeout = timeout

    async def _post_json(
        self,
        url: str,
        payload: Mapping[str, Any],
        credentials: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST a JSON body and return the decoded JSON object.

        Raises:
            IntegrationError: Transport failure, non-2xx status, or a
                non-object body. Messages never contain credential values.
        """
        secrets = [str(v) for v in credentials.values() if v is not None]
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=dict(payload), headers=dict(headers or {}))
        except httpx.HTTPError as e:
            raise IntegrationError(self.name, f"request failed: {type(e).__name__}") from None

        if response.status_code >= 400:
            detail = scrub_values(response.text[:500], secrets)
            raise IntegrationError(
                self.name,
                sanitize_error_message(f"HTTP {response.status_code}: {detail}", max_length=500) or "",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError:
            raise IntegrationError(self.name, "response was not JSON") from None
        if not isinstance(body, dict):
            raise IntegrationError(self.name, "response was not a JSON object")
        return body


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def endpoint(credentials: Mapping[str, Any], default: str) -> str:
    """Credential-supplied endpoint override, without trailing slash."""
    value = credentials.get("endpoint") or default
    return str(value).rstrip("/")
