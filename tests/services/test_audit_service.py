"""Tests for the audit sink."""

import json

from sqlalchemy.pool import StaticPool

from agentvault.db.connection import create_db_engine, create_session_factory
from agentvault.services.audit_service import AuditEntry, AuditService


class TestAuditService:
    def test_emit_and_recent(self, audit):
        audit.emit(AuditEntry(who="user-1", what="route", success=True, connection_id="c1"))
        audit.emit(AuditEntry(who="user-2", what="execute", success=False))

        records = audit.recent()
        assert [r.what for r in records] == ["execute", "route"]
        assert [r.what for r in audit.recent(who="user-1")] == ["route"]
        assert records[1].connection_id == "c1"

    def test_detail_dict_redacted(self, audit):
        audit.emit(AuditEntry(
            who="user-1", what="execute", success=False,
            detail={"apiKey": "sk-or-secret", "reason": "timeout"},
        ))
        detail = json.loads(audit.recent()[0].detail)
        assert detail == {"apiKey": "***REDACTED***", "reason": "timeout"}

    def test_detail_string_sanitized(self, audit):
        audit.emit(AuditEntry(who="user-1", what="decrypt", success=False, detail="token=abc123 rejected"))
        assert "abc123" not in audit.recent()[0].detail

    def test_find_reference(self, audit):
        audit.emit(AuditEntry(who="user-1", what="execute", success=False, reference_id="ref-9"))
        assert audit.find_reference("ref-9").what == "execute"
        assert audit.find_reference("missing") is None

    def test_storage_failure_not_raised(self, caplog):
        """A database without tables logs the failure instead of raising."""
        engine = create_db_engine("sqlite:///:memory:", poolclass=StaticPool)
        service = AuditService(create_session_factory(engine))

        service.emit(AuditEntry(who="user-1", what="route", success=True))

        assert "Failed to persist audit record" in caplog.text
        engine.dispose()
