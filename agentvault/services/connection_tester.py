"""Live credential probes for every catalog connection type.

Each probe issues exactly one bounded, non-mutating HTTP call using the
candidate credentials and reports ``ProbeResult(ok, detail)``. There are
no retries. Failure details are human readable and never contain any
submitted credential value.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import httpx

from agentvault.services.connection_catalog import ConnectionCatalog
from agentvault.utils.redaction import sanitize_error_message, scrub_values
from agentvault.utils.signing import (
    GOOGLE_TOKEN_URL,
    parse_service_account,
    service_account_assertion,
    signed_sts_request,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
_MAX_PROVIDER_MESSAGE = 200


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe. ``detail`` is safe to persist and display."""

    ok: bool
    detail: str
    error_code: str | None = None


class ProbeSetupError(ValueError):
    """Candidate credentials could not be turned into a request."""


@dataclass(frozen=True)
class Probe:
    """How to check one connection type.

    Attributes:
        build: Turns candidate fields into the single request to send.
        auth_failure_statuses: Statuses meaning "credentials rejected".
        body_check: Optional extra check on a 2xx response body; returns
            a failure reason or None.
    """

    build: Callable[[Mapping[str, str]], httpx.Request]
    auth_failure_statuses: frozenset[int] = frozenset({401})
    body_check: Callable[[httpx.Response], str | None] | None = None
    label: str = ""


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _base(fields: Mapping[str, str], key: str, default: str) -> str:
    return (fields.get(key) or default).rstrip("/")


def _aws_request(fields: Mapping[str, str]) -> httpx.Request:
    url, headers, body = signed_sts_request(
        fields["accessKeyId"],
        fields["secretAccessKey"],
        region=fields.get("region") or "us-east-1",
        session_token=fields.get("sessionToken") or None,
    )
    return httpx.Request("POST", url, headers=headers, content=body)


def _azure_request(fields: Mapping[str, str]) -> httpx.Request:
    return httpx.Request(
        "POST",
        f"https://login.microsoftonline.com/{fields['tenantId']}/oauth2/v2.0/token",
        data={
            "grant_type": "client_credentials",
            "client_id": fields["clientId"],
            "client_secret": fields["clientSecret"],
            "scope": "https://management.azure.com/.default",
        },
    )


def _gcp_request(fields: Mapping[str, str]) -> httpx.Request:
    try:
        info = parse_service_account(fields["keyFile"])
        key_project = info.get("project_id")
        if key_project and key_project != fields["projectId"]:
            raise ProbeSetupError(
                f"keyFile belongs to project '{key_project}', not '{fields['projectId']}'"
            )
        assertion = service_account_assertion(info)
    except ProbeSetupError:
        raise
    except ValueError as e:
        raise ProbeSetupError(str(e)) from e
    return httpx.Request(
        "POST",
        GOOGLE_TOKEN_URL,
        data={
            "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
            "assertion": assertion,
        },
    )


def _github_request(fields: Mapping[str, str]) -> httpx.Request:
    return httpx.Request(
        "GET",
        "https://api.github.com/user",
        headers={
            "Authorization": f"token {fields['token']}",
            "Accept": "application/vnd.github+json",
        },
    )


def _api_key_get(default_base: str, path: str) -> Callable[[Mapping[str, str]], httpx.Request]:
    def build(fields: Mapping[str, str]) -> httpx.Request:
        base = _base(fields, "endpoint", default_base)
        return httpx.Request("GET", f"{base}{path}", headers=_bearer(fields["apiKey"]))
    return build


def _supabase_request(fields: Mapping[str, str]) -> httpx.Request:
    return httpx.Request(
        "GET",
        f"{fields['url'].rstrip('/')}/rest/v1/",
        headers={"apikey": fields["anonKey"], **_bearer(fields["anonKey"])},
    )


def _openrouter_request(fields: Mapping[str, str]) -> httpx.Request:
    return httpx.Request(
        "GET", "https://openrouter.ai/api/v1/auth/key", headers=_bearer(fields["apiKey"])
    )


def _fal_request(fields: Mapping[str, str]) -> httpx.Request:
    return httpx.Request(
        "GET",
        "https://api.fal.ai/v1/models",
        params={"limit": 1},
        headers={"Authorization": f"Key {fields['apiKey']}"},
    )


def _modelslab_request(fields: Mapping[str, str]) -> httpx.Request:
    return httpx.Request(
        "POST",
        "https://modelslab.com/api/v6/user/get_user_data",
        json={"key": fields["apiKey"]},
    )


def _modelslab_body_check(response: httpx.Response) -> str | None:
    # ModelsLab reports key errors with HTTP 200 and status "error".
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("status") == "error":
        return "Authentication failed: API key was rejected"
    return None


STANDARD_PROBES: dict[str, Probe] = {
    "aws": Probe(_aws_request, frozenset({401, 403}), label="AWS STS"),
    "azure": Probe(_azure_request, frozenset({400, 401}), label="Azure AD"),
    "gcp": Probe(_gcp_request, frozenset({400, 401}), label="Google OAuth"),
    "github": Probe(_github_request, label="GitHub"),
    "openops": Probe(_api_key_get("https://api.openops.cloud", "/api/v1/health"), label="OpenOps"),
    "toolhive": Probe(_api_key_get("https://api.toolhive.com", "/api/v1/registry"), label="Toolhive"),
    "arcade": Probe(_api_key_get("https://api.arcade.dev", "/api/v1/projects"), label="Arcade"),
    "mcpjungle": Probe(_api_key_get("https://hub.mcpjungle.com", "/api/v1/status"), label="MCPJungle"),
    "supabase": Probe(_supabase_request, label="Supabase"),
    "openrouter": Probe(_openrouter_request, label="OpenRouter"),
    "fal": Probe(_fal_request, frozenset({401, 403}), label="FAL"),
    "modelslab": Probe(_modelslab_request, body_check=_modelslab_body_check, label="ModelsLab"),
}


def _provider_message(response: httpx.Response) -> str:
    """Pull a short provider-supplied reason out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:_MAX_PROVIDER_MESSAGE].strip()
    if isinstance(body, dict):
        for key in ("error_description", "message", "error", "msg"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value[:_MAX_PROVIDER_MESSAGE]
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"][:_MAX_PROVIDER_MESSAGE]
    return ""


class ConnectionTester:
    """Runs the live probe for a connection type.

    Args:
        catalog: Catalog whose every type must have a probe.
        timeout: Per-probe timeout in seconds.
        transport: Optional httpx transport (tests inject a fake).
        probes: Probe registry; defaults to STANDARD_PROBES.

    Raises:
        ValueError: If a catalog type has no probe.
    """

    def __init__(
        self,
        catalog: ConnectionCatalog,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        probes: Mapping[str, Probe] | None = None,
    ) -> None:
        self._catalog = catalog
        self._timeout = timeout
        self._transport = transport
        self._probes = dict(probes if probes is not None else STANDARD_PROBES)
        missing = sorted(set(catalog.list_types()) - set(self._probes))
        if missing:
            raise ValueError(f"No probe registered for connection types: {', '.join(missing)}")

    async def test(self, connection_type: str, fields: Mapping[str, str]) -> ProbeResult:
        """Probe candidate credentials against the provider.

        Args:
            connection_type: Catalog type key.
            fields: Candidate credential fields (already shape-validated).

        Returns:
            ProbeResult. Network and auth failures are results, not exceptions.

        Raises:
            UnsupportedConnectionType: If the type is not registered.
        """
        spec = self._catalog.describe(connection_type)
        probe = self._probes[connection_type]
        label = probe.label or spec.name

        try:
            request = probe.build(fields)
        except (ProbeSetupError, KeyError) as e:
            return self._fail(fields, "INVALID_CREDENTIALS", f"Invalid credentials: {e}")

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.send(request)
        except httpx.ConnectError:
            return self._fail(fields, "CONNECT_ERROR", f"Cannot reach {label}. Check network connectivity.")
        except httpx.TimeoutException:
            return self._fail(fields, "TIMEOUT", f"{label} did not respond within {self._timeout:g}s.")
        except httpx.HTTPError as e:
            return self._fail(fields, "NETWORK_ERROR", f"{label} request failed: {type(e).__name__}")

        status = response.status_code
        if 200 <= status < 300:
            if probe.body_check is not None:
                reason = probe.body_check(response)
                if reason:
                    return self._fail(fields, "AUTH_FAILED", f"{label}: {reason}")
            logger.info("Probe succeeded for %s", connection_type)
            return ProbeResult(ok=True, detail=f"Successfully authenticated with {label}.")

        provider_msg = _provider_message(response)
        suffix = f" ({provider_msg})" if provider_msg else ""
        if status in probe.auth_failure_statuses:
            return self._fail(
                fields, "AUTH_FAILED",
                f"Authentication failed: {label} rejected the credentials{suffix}.",
            )
        if status == 403:
            return self._fail(
                fields, "PERMISSION_DENIED",
                f"Permission denied: credentials lack access on {label}{suffix}.",
            )
        if status == 404:
            return self._fail(fields, "NOT_FOUND", f"{label} endpoint not found (HTTP 404).")
        if status == 429:
            return self._fail(fields, "RATE_LIMITED", f"{label} is rate limiting requests (HTTP 429).")
        return self._fail(fields, "API_ERROR", f"{label} returned HTTP {status}{suffix}.")

    def _fail(self, fields: Mapping[str, str], code: str, detail: str) -> ProbeResult:
        detail = scrub_values(detail, fields.values())
        detail = sanitize_error_message(detail, max_length=500) or ""
        logger.info("Probe failed (%s): %s", code, detail)
        return ProbeResult(ok=False, detail=detail, error_code=code)

