"""Pytest fixtures for API tests.

Provides a TestClient wired to a broker on in-memory SQLite with fake
probes and adapters.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from agentvault.api.main import create_app
from tests.fakes import TEST_USER


@pytest.fixture
def client(broker) -> Generator[TestClient, None, None]:
    """TestClient authenticated as TEST_USER."""
    app = create_app(broker=broker)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        test_client.headers.update({"X-User-Id": TEST_USER})
        yield test_client
