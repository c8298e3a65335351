"""Database module for AgentVault state management and persistence."""

from agentvault.db.connection import (
    create_db_engine,
    create_session_factory,
    get_database_url,
    init_db,
    session_scope,
)
from agentvault.db.models import (
    Agent,
    AgentConnection,
    AlertStatus,
    AuditRecord,
    Base,
    Connection,
    ConnectionAction,
    ConnectionLog,
    ConnectionStatus,
    RateLimitRecord,
    SecurityAlert,
    SecurityEvent,
    Severity,
)

__all__ = [
    # Models
    "Base",
    "Connection",
    "Agent",
    "AgentConnection",
    "ConnectionLog",
    "SecurityEvent",
    "SecurityAlert",
    "RateLimitRecord",
    "AuditRecord",
    # Enums
    "ConnectionStatus",
    "ConnectionAction",
    "Severity",
    "AlertStatus",
    # Connection
    "create_db_engine",
    "create_session_factory",
    "get_database_url",
    "init_db",
    "session_scope",
]
