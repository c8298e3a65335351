"""SQLAlchemy ORM models for the AgentVault state database.

This module defines the persistent records for user connections, agents
and their connection links, the append-only connection log, security
events/alerts, rate limits, and the audit sink table. Uses SQLAlchemy 2.0
style with Mapped and mapped_column. Timestamps are ISO8601 UTC text and
JSON payloads are TEXT columns parsed in the service layer.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class ConnectionStatus(str, Enum):
    """Status values for stored connections.

    Lifecycle: testing -> active/failed
               active -> suspended (security monitor only)
               suspended -> testing (human reactivation)
               any -> revoked (owner only, terminal)
    """

    active = "active"
    testing = "testing"
    failed = "failed"
    suspended = "suspended"
    revoked = "revoked"


class ConnectionAction(str, Enum):
    """Actions recorded in the append-only connection log."""

    created = "created"
    updated = "updated"
    used = "used"
    tested = "tested"
    revoked = "revoked"
    auto_suspended = "auto_suspended"
    reactivated = "reactivated"
    deleted = "deleted"


class Severity(str, Enum):
    """Severity levels for security events and alerts."""

    low = "low"
    medium = "medium"
    high = "high"


class AlertStatus(str, Enum):
    """Status values for security alerts."""

    active = "active"
    resolved = "resolved"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Connection(Base):
    """User-owned, encrypted third-party credential record.

    Attributes:
        id: UUID4 text primary key.
        user_id: Owning user.
        type: Connection type registered in the catalog (e.g. 'github').
        name: Human-readable name for UI display.
        description: Optional free-text description.
        config: Base64 encrypted credential blob. Only the cipher opens it.
        scopes: JSON list of granted scopes, sorted by rank.
        status: Lifecycle status (see ConnectionStatus).
        last_used: ISO8601 timestamp of last successful use.
        expires_at: Optional ISO8601 expiry of the underlying credentials.
        deleted_at: Soft delete marker.
        last_error_code: Structured error code from the last failure.
        error_message: Sanitized error message from the last failure.
        metadata_json: Non-secret bookkeeping (suspension reason, last probe detail).
        created_at: ISO8601 UTC timestamp.
        updated_at: ISO8601 UTC timestamp, service-managed (no ORM onupdate).
    """

    __tablename__ = "connections"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    config: Mapped[str] = mapped_column(Text, nullable=False)
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=ConnectionStatus.testing.value
    )
    last_used: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True, default="{}")
    created_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    links: Mapped[list["AgentConnection"]] = relationship(
        "AgentConnection", back_populates="connection", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_connections_user", "user_id"),
        Index("idx_connections_user_type", "user_id", "type"),
        Index("idx_connections_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Connection(id={self.id!r}, type={self.type!r}, "
            f"status={self.status!r})>"
        )


class Agent(Base):
    """An agent owned by a user, with capability flags used for routing.

    Attributes:
        capabilities: JSON object of flags (delegation, multiProvider,
            infrastructureAutomation, mediaGeneration, research, primary).
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    capabilities: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    links: Mapped[list["AgentConnection"]] = relationship(
        "AgentConnection", back_populates="agent", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_agents_user", "user_id"),)

    def __repr__(self) -> str:
        return f"<Agent(id={self.id!r}, name={self.name!r})>"


class AgentConnection(Base):
    """Link granting an agent scoped use of a connection.

    Attributes:
        permissions: JSON list of scopes, always a subset of the connection's scopes.
        is_required: Execution fails unless this connection is usable.
    """

    __tablename__ = "agent_connections"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    agent_id: Mapped[str] = mapped_column(
        Text, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    connection_id: Mapped[str] = mapped_column(
        Text, ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    permissions: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    agent: Mapped["Agent"] = relationship("Agent", back_populates="links")
    connection: Mapped["Connection"] = relationship("Connection", back_populates="links")

    __table_args__ = (
        UniqueConstraint("agent_id", "connection_id", name="uq_agent_connection"),
        Index("idx_agent_connections_agent", "agent_id"),
        Index("idx_agent_connections_connection", "connection_id"),
    )


class ConnectionLog(Base):
    """Append-only record of every connection lifecycle and usage event.

    Rows are removed only by the retention sweep.
    """

    __tablename__ = "connection_logs"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    connection_id: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    agent_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    __table_args__ = (
        Index("idx_connection_logs_connection", "connection_id"),
        Index("idx_connection_logs_user_created", "user_id", "created_at"),
    )


class SecurityEvent(Base):
    """Immutable record of one observed security-relevant event.

    Attributes:
        details: Redacted JSON payload. Never contains credential values.
    """

    __tablename__ = "security_events"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    connection_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(Text, nullable=False, default=Severity.low.value)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    __table_args__ = (
        Index("idx_security_events_user_created", "user_id", "created_at"),
        Index("idx_security_events_type", "event_type"),
    )


class SecurityAlert(Base):
    """Alert raised when a monitor threshold is crossed.

    Lifecycle: active -> resolved
    """

    __tablename__ = "security_alerts"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    connection_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    alert_type: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=AlertStatus.active.value
    )
    created_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)
    resolved_at: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_security_alerts_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SecurityAlert(type={self.alert_type!r}, "
            f"severity={self.severity!r}, status={self.status!r})>"
        )


class RateLimitRecord(Base):
    """Per-user action throttle, consulted before connection creation."""

    __tablename__ = "rate_limits"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    __table_args__ = (
        UniqueConstraint("user_id", "action", name="uq_rate_limit_user_action"),
    )


class AuditRecord(Base):
    """Row written by the audit sink for every broker decision."""

    __tablename__ = "audit_records"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=generate_uuid)
    who: Mapped[str] = mapped_column(Text, nullable=False)
    what: Mapped[str] = mapped_column(Text, nullable=False)
    connection_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    __table_args__ = (Index("idx_audit_records_timestamp", "timestamp"),)
