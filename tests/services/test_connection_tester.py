"""Tests for live connection probes, using a fake httpx transport."""

import json

import httpx
import pytest

from agentvault.services.connection_tester import STANDARD_PROBES, ConnectionTester
from tests.fakes import VALID_FIELDS, FakeTransport


def _tester(catalog, handler):
    transport = FakeTransport(handler)
    return ConnectionTester(catalog, timeout=2.0, transport=transport), transport


def _status(code, body=None):
    def handler(request):
        return httpx.Response(code, json=body if body is not None else {})
    return handler


class TestProbeRegistry:
    def test_every_catalog_type_has_probe(self, catalog):
        assert set(catalog.list_types()) <= set(STANDARD_PROBES)

    def test_missing_probe_rejected(self, catalog):
        with pytest.raises(ValueError, match="No probe registered"):
            ConnectionTester(catalog, probes={"github": STANDARD_PROBES["github"]})


class TestProbeOutcomes:
    """Status code mapping to ProbeResult."""

    @pytest.mark.asyncio
    async def test_success(self, catalog):
        tester, transport = _tester(catalog, _status(200, {"login": "octocat"}))
        result = await tester.test("github", VALID_FIELDS["github"])
        assert result.ok is True
        assert result.detail == "Successfully authenticated with GitHub."
        assert len(transport.requests) == 1
        assert transport.requests[0].url == "https://api.github.com/user"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (401, "AUTH_FAILED"),
            (403, "PERMISSION_DENIED"),
            (404, "NOT_FOUND"),
            (429, "RATE_LIMITED"),
            (500, "API_ERROR"),
        ],
    )
    async def test_status_mapping(self, catalog, status, code):
        tester, _ = _tester(catalog, _status(status, {"message": "nope"}))
        result = await tester.test("github", VALID_FIELDS["github"])
        assert result.ok is False
        assert result.error_code == code

    @pytest.mark.asyncio
    async def test_auth_failure_statuses_per_type(self, catalog):
        """AWS treats 403 as rejected credentials."""
        tester, _ = _tester(catalog, _status(403))
        result = await tester.test("aws", VALID_FIELDS["aws"])
        assert result.error_code == "AUTH_FAILED"

    @pytest.mark.asyncio
    async def test_aws_sends_signed_caller_identity(self, catalog):
        tester, transport = _tester(catalog, _status(200))
        result = await tester.test("aws", VALID_FIELDS["aws"])

        assert result.ok is True
        sent = transport.requests[0]
        assert sent.method == "POST"
        assert sent.url.host.startswith("sts.")
        assert sent.headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=")
        assert "x-amz-date" in sent.headers
        assert b"Action=GetCallerIdentity" in sent.content

    @pytest.mark.asyncio
    async def test_connect_error(self, catalog):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        tester, _ = _tester(catalog, handler)
        result = await tester.test("openrouter", VALID_FIELDS["openrouter"])
        assert (result.ok, result.error_code) == (False, "CONNECT_ERROR")

    @pytest.mark.asyncio
    async def test_timeout(self, catalog):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        tester, _ = _tester(catalog, handler)
        result = await tester.test("openrouter", VALID_FIELDS["openrouter"])
        assert result.error_code == "TIMEOUT"
        assert "did not respond within 2s" in result.detail

    @pytest.mark.asyncio
    async def test_modelslab_error_body_is_auth_failure(self, catalog):
        """ModelsLab returns 200 with status=error for bad keys."""
        tester, transport = _tester(catalog, _status(200, {"status": "error", "message": "Invalid key"}))
        result = await tester.test("modelslab", VALID_FIELDS["modelslab"])
        assert (result.ok, result.error_code) == (False, "AUTH_FAILED")
        assert json.loads(transport.requests[0].content) == {"key": VALID_FIELDS["modelslab"]["apiKey"]}

    @pytest.mark.asyncio
    async def test_gcp_bad_key_file(self, catalog):
        """Unparseable keyFile fails before any request is sent."""
        tester, transport = _tester(catalog, _status(200))
        result = await tester.test("gcp", {"projectId": "my-project-1", "keyFile": "{}"})
        assert result.error_code == "INVALID_CREDENTIALS"
        assert transport.requests == []


class TestNoSecretLeak:
    @pytest.mark.asyncio
    async def test_echoed_credential_scrubbed(self, catalog):
        """A provider error that echoes the key never reaches the detail."""
        key = VALID_FIELDS["openrouter"]["apiKey"]
        tester, _ = _tester(catalog, _status(401, {"message": f"bad key {key}"}))
        result = await tester.test("openrouter", {"apiKey": key})
        assert result.ok is False
        assert key not in result.detail
        assert "***REDACTED***" in result.detail

    @pytest.mark.asyncio
    async def test_api_key_endpoint_override(self, catalog):
        """API-key types probe the credential-supplied endpoint."""
        tester, transport = _tester(catalog, _status(200))
        fields = {**VALID_FIELDS["openops"], "endpoint": "https://ops.internal/"}
        result = await tester.test("openops", fields)
        assert result.ok
        request = transport.requests[0]
        assert str(request.url) == "https://ops.internal/api/v1/health"
        assert request.headers["Authorization"] == f"Bearer {fields['apiKey']}"
