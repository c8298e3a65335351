"""Vault and broker services."""

from agentvault.services.audit_service import AuditEntry, AuditService
from agentvault.services.broker import ConnectionBroker
from agentvault.services.capability_router import (
    Capability,
    CapabilityRouter,
    ExecutionResult,
    classify,
    media_kind,
)
from agentvault.services.connection_catalog import (
    ConnectionCatalog,
    ConnectionSpec,
    Scope,
    default_catalog,
)
from agentvault.services.connection_store import (
    AgentView,
    ConnectionStore,
    ConnectionView,
    LinkView,
    TestOutcome,
)
from agentvault.services.connection_tester import ConnectionTester, ProbeResult
from agentvault.services.credential_cache import CachedCredentials, CredentialCache
from agentvault.services.credential_cipher import CredentialCipher, EncryptedBlob
from agentvault.services.expiring_counters import ExpiringCounterArena
from agentvault.services.security_monitor import (
    AlertView,
    LoggingNotifier,
    Notifier,
    SecurityEventView,
    SecurityMonitor,
)

__all__ = [
    "AgentView",
    "AlertView",
    "AuditEntry",
    "AuditService",
    "CachedCredentials",
    "Capability",
    "CapabilityRouter",
    "ConnectionBroker",
    "ConnectionCatalog",
    "ConnectionSpec",
    "ConnectionStore",
    "ConnectionTester",
    "ConnectionView",
    "CredentialCache",
    "CredentialCipher",
    "EncryptedBlob",
    "ExecutionResult",
    "ExpiringCounterArena",
    "LinkView",
    "LoggingNotifier",
    "Notifier",
    "ProbeResult",
    "Scope",
    "SecurityEventView",
    "SecurityMonitor",
    "TestOutcome",
    "classify",
    "default_catalog",
    "media_kind",
]
