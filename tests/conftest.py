"""Root-level pytest fixtures for all tests.

Provides shared fixtures for:
- In-memory SQLite state database (StaticPool, one connection)
- Credential cipher with cheap scrypt parameters
- Fake probe runner, clocks, notifier and integrations (tests/fakes.py)
- Fully wired broker for end-to-end scenarios
"""

import os

import pytest
from sqlalchemy.pool import StaticPool

from agentvault.config import AgentVaultConfig, MonitorSettings
from agentvault.db.connection import create_db_engine, create_session_factory, init_db
from agentvault.services.audit_service import AuditService
from agentvault.services.broker import ConnectionBroker
from agentvault.services.connection_catalog import default_catalog
from agentvault.services.connection_store import ConnectionStore
from agentvault.services.credential_cache import CredentialCache
from agentvault.services.credential_cipher import CredentialCipher
from agentvault.services.expiring_counters import ExpiringCounterArena
from agentvault.services.security_monitor import SecurityMonitor
from tests.fakes import (
    TEST_SECRET,
    FakeClock,
    FakeTester,
    FakeWallClock,
    RecordingNotifier,
    fake_integrations,
)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Keep tests independent of the developer's environment."""
    for key in list(os.environ):
        if key.startswith("AGENTVAULT_") or key == "DATABASE_URL":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AGENTVAULT_DATA_DIR", str(tmp_path / "data"))


# ============================================================================
# Clocks and fakes
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def tester() -> FakeTester:
    return FakeTester()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def integrations():
    return fake_integrations()


# ============================================================================
# Database and services
# ============================================================================


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite:///:memory:", poolclass=StaticPool)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_SECRET, scrypt_n=2**4)


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def audit(session_factory) -> AuditService:
    return AuditService(session_factory)


@pytest.fixture
def store(session_factory, cipher, catalog, tester, audit) -> ConnectionStore:
    return ConnectionStore(session_factory, cipher, catalog, tester, audit)


@pytest.fixture
def cache(store, clock) -> CredentialCache:
    return CredentialCache(store, ttl=300, clock=clock)


@pytest.fixture
def monitor_settings() -> MonitorSettings:
    return MonitorSettings(
        failed_tests_per_hour=3,
        connections_created_per_minute=5,
        revoked_usage_threshold=3,
    )


@pytest.fixture
def monitor(session_factory, store, monitor_settings, notifier, clock, wall_clock) -> SecurityMonitor:
    return SecurityMonitor(
        session_factory,
        store,
        monitor_settings,
        notifier=notifier,
        counters=ExpiringCounterArena(clock=clock),
        now=wall_clock,
    )


@pytest.fixture
def broker_config() -> AgentVaultConfig:
    return AgentVaultConfig(
        vault={"mode": "test", "scrypt_n": 2**4},
        monitor={"failed_tests_per_hour": 3, "connections_created_per_minute": 5},
    )


@pytest.fixture
def broker(broker_config, session_factory, tester, integrations, notifier) -> ConnectionBroker:
    return ConnectionBroker.from_config(
        broker_config,
        session_factory,
        master_secret=TEST_SECRET,
        tester=tester,
        integrations=integrations,
        notifier=notifier,
    )
