"""Audit sink for broker decisions.

Every decryption failure, routing decision, and execution outcome is
written as one AuditRecord row plus a log line. The sink is
fire-and-forget: a failure to persist is logged and never raised to the
caller, since the audited operation has already happened.

Usage:
    audit = AuditService(SessionLocal)
    audit.emit(AuditEntry(who="user-1", what="execute", success=True))
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from agentvault.db.models import AuditRecord, utc_now_iso
from agentvault.utils.redaction import redact_for_logging, sanitize_error_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """One audited decision. ``detail`` may be a string or a dict."""

    who: str
    what: str
    success: bool
    connection_id: str | None = None
    detail: str | dict[str, Any] | None = None
    reference_id: str | None = None


def _render_detail(detail: str | dict[str, Any] | None) -> str | None:
    if detail is None:
        return None
    if isinstance(detail, dict):
        return sanitize_error_message(json.dumps(redact_for_logging(detail), default=str))
    return sanitize_error_message(detail)


class AuditService:
    """Persists AuditRecord rows with redaction.

    Attributes:
        session_factory: sessionmaker used for each write.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def emit(self, entry: AuditEntry) -> None:
        """Record an audit entry. Never raises on storage failure."""
        detail = _render_detail(entry.detail)
        log = logger.info if entry.success else logger.warning
        log(
            "audit who=%s what=%s connection=%s success=%s ref=%s detail=%s",
            entry.who, entry.what, entry.connection_id, entry.success,
            entry.reference_id, detail,
        )
        try:
            with self.session_factory() as db:
                db.add(AuditRecord(
                    who=entry.who,
                    what=entry.what,
                    connection_id=entry.connection_id,
                    success=entry.success,
                    detail=detail,
                    reference_id=entry.reference_id,
                    timestamp=utc_now_iso(),
                ))
                db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to persist audit record for %s", entry.what)

    def recent(self, limit: int = 100, who: str | None = None) -> list[AuditRecord]:
        """Return the most recent audit records, newest first."""
        with self.session_factory() as db:
            stmt = select(AuditRecord).order_by(AuditRecord.timestamp.desc()).limit(limit)
            if who is not None:
                stmt = stmt.where(AuditRecord.who == who)
            return list(db.scalars(stmt))

    def find_reference(self, reference_id: str) -> AuditRecord | None:
        """Look up the audit record behind an ExecutionFailed reference id."""
        with self.session_factory() as db:
            return db.scalars(
                select(AuditRecord).where(AuditRecord.reference_id == reference_id)
            ).first()
