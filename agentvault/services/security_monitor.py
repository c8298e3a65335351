"""Security monitor: event log, threshold alerts, rate limits, auto-suspension.

Every observed event is persisted as an immutable SecurityEvent with
redacted details, then run through the threshold rules:

- connection_test_failed: N within a rolling hour per connection raises
  repeated_failed_tests and suspends the connection.
- connection_created: M within a rolling minute per user raises
  mass_connection_creation and rate-limits connection creation.
- revoked_connection_usage: K cumulative per connection raises
  persistent_revoked_usage.
- Events carrying an IP address not seen in the user's recent history
  raise unusual_location_access.

Alerts fire once, on the increment that crosses a threshold. They are
persisted before high-severity ones are handed to the notifier.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from agentvault.config import MonitorSettings
from agentvault.db.models import (
    AlertStatus,
    ConnectionAction,
    ConnectionLog,
    RateLimitRecord,
    SecurityAlert,
    SecurityEvent,
    Severity,
)
from agentvault.errors import InvalidStatusTransition, NotFoundError, RateLimited
from agentvault.services.connection_store import ConnectionStore
from agentvault.services.expiring_counters import ExpiringCounterArena
from agentvault.utils.redaction import redact_for_logging

logger = logging.getLogger(__name__)

# Event types
CONNECTION_CREATED = "connection_created"
CONNECTION_TEST_FAILED = "connection_test_failed"
CONNECTION_USED = "connection_used"
REVOKED_CONNECTION_USAGE = "revoked_connection_usage"
UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
CONNECTION_CREDENTIAL_CHANGED = "connection_credential_changed"
DECRYPTION_FAILURE = "decryption_failure"

# Alert types
REPEATED_FAILED_TESTS = "repeated_failed_tests"
MASS_CONNECTION_CREATION = "mass_connection_creation"
PERSISTENT_REVOKED_USAGE = "persistent_revoked_usage"
UNUSUAL_LOCATION_ACCESS = "unusual_location_access"

RATE_LIMIT_CONNECTION_CREATION = "connection_creation"

_HIGH = frozenset({
    UNAUTHORIZED_ACCESS_ATTEMPT, "credential_theft_detected", MASS_CONNECTION_CREATION,
    REVOKED_CONNECTION_USAGE, PERSISTENT_REVOKED_USAGE, "suspicious_location_access",
    DECRYPTION_FAILURE,
})
_MEDIUM = frozenset({
    REPEATED_FAILED_TESTS, "unusual_usage_pattern", CONNECTION_CREDENTIAL_CHANGED,
    "multiple_agent_links", UNUSUAL_LOCATION_ACCESS,
})

# Only these events carry a meaningful request origin.
_LOCATION_CHECKED = frozenset({CONNECTION_CREATED, CONNECTION_USED})


def severity_for(kind: str) -> str:
    """Map an event or alert type to its severity."""
    if kind in _HIGH:
        return Severity.high.value
    if kind in _MEDIUM:
        return Severity.medium.value
    return Severity.low.value


@dataclass(frozen=True)
class SecurityEventView:
    id: str
    user_id: str
    connection_id: str | None
    event_type: str
    severity: str
    details: dict[str, Any]
    ip_address: str | None
    user_agent: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AlertView:
    id: str
    user_id: str
    connection_id: str | None
    alert_type: str
    severity: str
    details: dict[str, Any]
    status: str
    created_at: str
    resolved_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Notifier(Protocol):
    """Receives high-severity alerts (email, pager, chat...)."""

    def notify(self, alert: AlertView) -> None: ...


class LoggingNotifier:
    """Default notifier: writes the alert to the log."""

    def notify(self, alert: AlertView) -> None:
        logger.warning(
            "SECURITY ALERT [%s] %s for user %s (connection %s)",
            alert.severity, alert.alert_type, alert.user_id, alert.connection_id,
        )


def _loads(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _event_view(row: SecurityEvent) -> SecurityEventView:
    return SecurityEventView(
        id=row.id,
        user_id=row.user_id,
        connection_id=row.connection_id,
        event_type=row.event_type,
        severity=row.severity,
        details=_loads(row.details),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )


def _alert_view(row: SecurityAlert) -> AlertView:
    return AlertView(
        id=row.id,
        user_id=row.user_id,
        connection_id=row.connection_id,
        alert_type=row.alert_type,
        severity=row.severity,
        details=_loads(row.details),
        status=row.status,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SecurityMonitor:
    """Observes connection activity and reacts to suspicious patterns.

    Args:
        session_factory: sessionmaker bound to the state database.
        store: Connection store, used to suspend connections.
        settings: Thresholds and retention windows.
        notifier: Receiver for high-severity alerts.
        counters: Counter arena (tests inject one with a fake clock).
        now: Wall-clock source for persisted timestamps.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: ConnectionStore,
        settings: MonitorSettings | None = None,
        notifier: Notifier | None = None,
        counters: ExpiringCounterArena | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self.settings = settings or MonitorSettings()
        self._notifier = notifier or LoggingNotifier()
        if counters is None:
            counters = ExpiringCounterArena(idle_ttl=float(self.settings.counter_idle_seconds))
        self._counters = counters
        self._now = now

    def _now_iso(self) -> str:
        return self._now().isoformat()

    # --- Observation ---

    def observe(
        self,
        user_id: str,
        connection_id: str | None,
        event_type: str,
        details: dict[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SecurityEventView:
        """Persist a security event and apply the threshold rules.

        Returns:
            The stored event. Alerts and suspensions are side effects.
        """
        unusual_origin = (
            ip_address is not None
            and event_type in _LOCATION_CHECKED
            and self._is_unusual_location(user_id, connection_id, ip_address)
        )

        with self._session_factory() as db:
            row = SecurityEvent(
                user_id=user_id,
                connection_id=connection_id,
                event_type=event_type,
                severity=severity_for(event_type),
                details=json.dumps(redact_for_logging(details or {}), default=str),
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=self._now_iso(),
            )
            db.add(row)
            db.commit()
            event = _event_view(row)

        if event_type == CONNECTION_TEST_FAILED:
            self._on_failed_test(user_id, connection_id)
        elif event_type == CONNECTION_CREATED:
            self._on_connection_created(user_id)
        elif event_type == REVOKED_CONNECTION_USAGE:
            self._on_revoked_usage(user_id, connection_id)

        if unusual_origin:
            self._raise_alert(user_id, connection_id, UNUSUAL_LOCATION_ACCESS, {
                "new_ip": ip_address,
                "possible_issue": "Account access from new location",
            })
        return event

    @staticmethod
    def _crossed(before: int, after: int, threshold: int) -> bool:
        return before < threshold <= after

    def _on_failed_test(self, user_id: str, connection_id: str | None) -> None:
        threshold = self.settings.failed_tests_per_hour
        before, after = self._counters.increment(
            (user_id, connection_id, CONNECTION_TEST_FAILED), window=3600.0
        )
        if not self._crossed(before, after, threshold):
            return
        self._raise_alert(user_id, connection_id, REPEATED_FAILED_TESTS, {
            "failure_count": after,
            "time_window": "1 hour",
            "possible_issue": "Credential compromise or configuration error",
        })
        if connection_id is not None:
            self._suspend(connection_id, REPEATED_FAILED_TESTS)

    def _on_connection_created(self, user_id: str) -> None:
        threshold = self.settings.connections_created_per_minute
        before, after = self._counters.increment(
            (user_id, None, CONNECTION_CREATED), window=60.0
        )
        if not self._crossed(before, after, threshold):
            return
        self._raise_alert(user_id, None, MASS_CONNECTION_CREATION, {
            "connection_count": after,
            "time_window": "1 minute",
            "possible_issue": "Automated attack or compromised account",
        })
        self.apply_rate_limit(user_id, RATE_LIMIT_CONNECTION_CREATION, self.settings.rate_limit_seconds)

    def _on_revoked_usage(self, user_id: str, connection_id: str | None) -> None:
        threshold = self.settings.revoked_usage_threshold
        before, after = self._counters.increment(
            (user_id, connection_id, REVOKED_CONNECTION_USAGE), window=None
        )
        if not self._crossed(before, after, threshold):
            return
        self._raise_alert(user_id, connection_id, PERSISTENT_REVOKED_USAGE, {
            "attempts": after,
            "possible_issue": "Compromised account or malicious script",
        })

    def reset_failed_tests(self, user_id: str, connection_id: str) -> None:
        """Start a fresh failed-test window for a connection.

        Called when the owner reactivates a suspended connection, so the
        threshold applies again to failures after reactivation.
        """
        self._counters.reset((user_id, connection_id, CONNECTION_TEST_FAILED))

    def _suspend(self, connection_id: str, reason: str) -> None:
        try:
            self._store.suspend(connection_id, reason)
        except (InvalidStatusTransition, NotFoundError) as e:
            logger.info("Auto-suspension of %s skipped: %s", connection_id, e)
        else:
            logger.warning("Connection %s auto-suspended: %s", connection_id, reason)

    def _is_unusual_location(
        self, user_id: str, connection_id: str | None, ip_address: str
    ) -> bool:
        since = (self._now() - timedelta(days=self.settings.location_history_days)).isoformat()
        with self._session_factory() as db:
            event_ips = db.scalars(
                select(SecurityEvent.ip_address).where(
                    SecurityEvent.user_id == user_id,
                    SecurityEvent.created_at >= since,
                    SecurityEvent.ip_address.is_not(None),
                ).distinct()
            )
            log_stmt = select(ConnectionLog.ip_address).where(
                ConnectionLog.user_id == user_id,
                ConnectionLog.created_at >= since,
                ConnectionLog.ip_address.is_not(None),
            )
            if connection_id is not None:
                # The creation row of the connection being observed is not history.
                log_stmt = log_stmt.where(
                    ~((ConnectionLog.connection_id == connection_id)
                      & (ConnectionLog.action == ConnectionAction.created.value))
                )
            history = set(event_ips) | set(db.scalars(log_stmt.distinct()))
        return bool(history) and ip_address not in history

    def _raise_alert(
        self, user_id: str, connection_id: str | None, alert_type: str, details: dict[str, Any]
    ) -> AlertView:
        with self._session_factory() as db:
            row = SecurityAlert(
                user_id=user_id,
                connection_id=connection_id,
                alert_type=alert_type,
                severity=severity_for(alert_type),
                details=json.dumps(redact_for_logging(details), default=str),
                status=AlertStatus.active.value,
                created_at=self._now_iso(),
            )
            db.add(row)
            db.commit()
            alert = _alert_view(row)

        logger.warning("Security alert %s (%s) for user %s", alert_type, alert.severity, user_id)
        if alert.severity == Severity.high.value:
            try:
                self._notifier.notify(alert)
            except Exception:
                logger.exception("Notifier failed for alert %s", alert.id)
        return alert

    # --- Rate limits ---

    def apply_rate_limit(self, user_id: str, action: str, duration_seconds: int) -> str:
        """Throttle an action for a user. Returns the ISO expiry."""
        expires_at = (self._now() + timedelta(seconds=duration_seconds)).isoformat()
        with self._session_factory() as db:
            row = db.scalars(
                select(RateLimitRecord).where(
                    RateLimitRecord.user_id == user_id, RateLimitRecord.action == action
                )
            ).first()
            if row is None:
                db.add(RateLimitRecord(
                    user_id=user_id, action=action, expires_at=expires_at,
                    created_at=self._now_iso(),
                ))
            else:
                row.expires_at = expires_at
            db.commit()
        logger.warning("Rate limit applied to user %s for %s until %s", user_id, action, expires_at)
        return expires_at

    def is_rate_limited(self, user_id: str, action: str) -> str | None:
        """Return the ISO expiry if the action is currently throttled, else None."""
        now = self._now_iso()
        with self._session_factory() as db:
            row = db.scalars(
                select(RateLimitRecord).where(
                    RateLimitRecord.user_id == user_id,
                    RateLimitRecord.action == action,
                    RateLimitRecord.expires_at > now,
                )
            ).first()
            return row.expires_at if row is not None else None

    def check_rate_limit(self, user_id: str, action: str) -> None:
        """Raises RateLimited if the action is currently throttled."""
        expires_at = self.is_rate_limited(user_id, action)
        if expires_at is not None:
            raise RateLimited(action, expires_at)

    # --- Alerts and reporting ---

    def alerts(self, user_id: str, status: str | None = None, limit: int = 100) -> list[AlertView]:
        with self._session_factory() as db:
            stmt = select(SecurityAlert).where(SecurityAlert.user_id == user_id)
            if status is not None:
                stmt = stmt.where(SecurityAlert.status == status)
            stmt = stmt.order_by(SecurityAlert.created_at.desc()).limit(limit)
            return [_alert_view(row) for row in db.scalars(stmt)]

    def events(self, user_id: str, limit: int = 100) -> list[SecurityEventView]:
        with self._session_factory() as db:
            stmt = (
                select(SecurityEvent)
                .where(SecurityEvent.user_id == user_id)
                .order_by(SecurityEvent.created_at.desc())
                .limit(limit)
            )
            return [_event_view(row) for row in db.scalars(stmt)]

    def resolve_alert(self, alert_id: str, user_id: str) -> AlertView:
        """Mark an alert resolved. Resolving twice is a no-op.

        Raises:
            NotFoundError: Missing or owned by another user.
        """
        with self._session_factory() as db:
            row = db.get(SecurityAlert, alert_id)
            if row is None or row.user_id != user_id:
                raise NotFoundError("SecurityAlert", alert_id)
            if row.status != AlertStatus.resolved.value:
                row.status = AlertStatus.resolved.value
                row.resolved_at = self._now_iso()
                db.commit()
            return _alert_view(row)

    def security_report(self, user_id: str, days: int = 7) -> dict[str, Any]:
        """Summarize a user's events and alerts over the last ``days`` days."""
        end = self._now()
        start = end - timedelta(days=days)
        with self._session_factory() as db:
            events = [_event_view(r) for r in db.scalars(
                select(SecurityEvent)
                .where(SecurityEvent.user_id == user_id, SecurityEvent.created_at >= start.isoformat())
                .order_by(SecurityEvent.created_at.desc())
            )]
            alerts = [_alert_view(r) for r in db.scalars(
                select(SecurityAlert)
                .where(SecurityAlert.user_id == user_id, SecurityAlert.created_at >= start.isoformat())
                .order_by(SecurityAlert.created_at.desc())
            )]

        return {
            "user_id": user_id,
            "period": {"start": start.isoformat(), "end": end.isoformat(), "days": days},
            "summary": {
                "total_events": len(events),
                "total_alerts": len(alerts),
                "high_severity_alerts": sum(1 for a in alerts if a.severity == Severity.high.value),
                "active_alerts": sum(1 for a in alerts if a.status == AlertStatus.active.value),
                "events_by_type": dict(Counter(e.event_type for e in events)),
                "alerts_by_type": dict(Counter(a.alert_type for a in alerts)),
            },
            "events": [e.to_dict() for e in events[:50]],
            "alerts": [a.to_dict() for a in alerts[:20]],
            "recommendations": self._recommendations(events, alerts),
        }

    @staticmethod
    def _recommendations(
        events: list[SecurityEventView], alerts: list[AlertView]
    ) -> list[dict[str, str]]:
        recommendations = []
        failed = sum(1 for e in events if e.event_type == CONNECTION_TEST_FAILED)
        if failed > 5:
            recommendations.append({
                "type": "credential_health",
                "priority": "medium",
                "message": "Multiple connection test failures detected. "
                           "Review and update your connection credentials.",
            })
        if any(a.severity == Severity.high.value for a in alerts):
            recommendations.append({
                "type": "immediate_action",
                "priority": "high",
                "message": "High severity security alerts detected. "
                           "Review your account activity and rotate affected credentials.",
            })
        if any(e.event_type == REVOKED_CONNECTION_USAGE for e in events):
            recommendations.append({
                "type": "cleanup",
                "priority": "medium",
                "message": "Attempts to use revoked connections detected. "
                           "Clean up agents or scripts still using old credentials.",
            })
        return recommendations

    # --- Retention ---

    def sweep(self) -> dict[str, int]:
        """Delete expired security data and stale counters.

        Returns:
            Counts removed per category.
        """
        now = self._now()
        cutoff = (now - timedelta(days=self.settings.retention_days)).isoformat()
        with self._session_factory() as db:
            events = db.execute(delete(SecurityEvent).where(SecurityEvent.created_at < cutoff)).rowcount
            alerts = db.execute(delete(SecurityAlert).where(
                SecurityAlert.status == AlertStatus.resolved.value,
                SecurityAlert.created_at < cutoff,
            )).rowcount
            limits = db.execute(
                delete(RateLimitRecord).where(RateLimitRecord.expires_at <= now.isoformat())
            ).rowcount
            logs = db.execute(delete(ConnectionLog).where(ConnectionLog.created_at < cutoff)).rowcount
            db.commit()
        counters = self._counters.sweep()
        result = {
            "security_events": events or 0,
            "resolved_alerts": alerts or 0,
            "rate_limits": limits or 0,
            "connection_logs": logs or 0,
            "counters": counters,
        }
        logger.info("Security sweep removed %s", result)
        return result
