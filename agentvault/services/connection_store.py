"""Connection store: persistence and lifecycle for user connections.

Owns the Connection, Agent, AgentConnection and ConnectionLog tables.
Credentials are validated by the catalog, probed live by the tester and
sealed by the cipher before anything is written; every view returned to
callers carries metadata and a display-safe projection, never the blob.

Lifecycle: testing -> active/failed
           active/failed/testing -> suspended (security monitor only)
           suspended -> testing (owner reactivation)
           any -> revoked (owner only, terminal)

Writes that change credentials, scopes, or status notify registered
change listeners (the credential cache) before returning.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from agentvault.db.models import (
    Agent,
    AgentConnection,
    Connection,
    ConnectionAction,
    ConnectionLog,
    ConnectionStatus,
    utc_now_iso,
)
from agentvault.errors import (
    ConnectionInUse,
    ConnectionNotUsable,
    DecryptionFailed,
    FieldError,
    InvalidStatusTransition,
    NotFoundError,
    ProbeFailed,
    ValidationFailed,
)
from agentvault.services.audit_service import AuditEntry, AuditService
from agentvault.services.connection_catalog import ALL_SCOPES, ConnectionCatalog, sort_scopes
from agentvault.services.connection_tester import ConnectionTester, ProbeResult
from agentvault.services.credential_cipher import CredentialCipher
from agentvault.utils.redaction import redact_for_logging, sanitize_error_message

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, str], None]

ACTOR_OWNER = "owner"
ACTOR_MONITOR = "monitor"
ACTOR_SYSTEM = "system"


@dataclass(frozen=True)
class ConnectionView:
    """Caller-facing connection metadata. Never holds credential values."""

    id: str
    user_id: str
    type: str
    name: str
    description: str | None
    scopes: tuple[str, ...]
    status: str
    display: dict[str, Any]
    last_used: str | None
    expires_at: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None = None
    last_error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["scopes"] = list(self.scopes)
        return data


@dataclass(frozen=True)
class AgentView:
    """Agent metadata used by the router."""

    id: str
    user_id: str
    name: str
    capabilities: dict[str, Any]
    is_active: bool
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LinkView:
    """An agent's scoped grant on one connection."""

    id: str
    agent_id: str
    connection_id: str
    permissions: tuple[str, ...]
    is_required: bool
    created_at: str
    connection: ConnectionView | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "agent_id": self.agent_id,
            "connection_id": self.connection_id,
            "permissions": list(self.permissions),
            "is_required": self.is_required,
            "created_at": self.created_at,
        }
        if self.connection is not None:
            data["connection"] = self.connection.to_dict()
        return data


@dataclass(frozen=True)
class TestOutcome:
    """Result of re-probing a stored connection."""

    connection: ConnectionView
    result: ProbeResult


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _normalize_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Drop empty optional values so they are neither stored nor validated."""
    return {k: v for k, v in fields.items() if v not in (None, "")}


def _row_to_view(row: Connection) -> ConnectionView:
    metadata = _loads(row.metadata_json, {})
    display = metadata.pop("display", {}) if isinstance(metadata, dict) else {}
    return ConnectionView(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        name=row.name,
        description=row.description,
        scopes=tuple(_loads(row.scopes, [])),
        status=row.status,
        display=display,
        last_used=row.last_used,
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
        last_error_code=row.last_error_code,
        error_message=row.error_message,
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def _agent_to_view(row: Agent) -> AgentView:
    return AgentView(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        capabilities=_loads(row.capabilities, {}),
        is_active=row.is_active,
        created_at=row.created_at,
    )


def _link_to_view(row: AgentConnection, connection: ConnectionView | None = None) -> LinkView:
    return LinkView(
        id=row.id,
        agent_id=row.agent_id,
        connection_id=row.connection_id,
        permissions=tuple(_loads(row.permissions, [])),
        is_required=row.is_required,
        created_at=row.created_at,
        connection=connection,
    )


class ConnectionStore:
    """CRUD and lifecycle operations for connections and agent links.

    Args:
        session_factory: sessionmaker bound to the state database.
        cipher: Credential cipher sealing every stored bundle.
        catalog: Connection type registry.
        tester: Live probe runner.
        audit: Optional audit sink.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cipher: CredentialCipher,
        catalog: ConnectionCatalog,
        tester: ConnectionTester,
        audit: AuditService | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._catalog = catalog
        self._tester = tester
        self._audit = audit
        self._listeners: list[ChangeListener] = []

    @property
    def catalog(self) -> ConnectionCatalog:
        return self._catalog

    # --- Change notification ---

    def add_change_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked as ``listener(connection_id, user_id)``."""
        self._listeners.append(listener)

    def _notify(self, connection_id: str, user_id: str) -> None:
        for listener in self._listeners:
            listener(connection_id, user_id)

    def _emit(self, entry: AuditEntry) -> None:
        if self._audit is not None:
            self._audit.emit(entry)

    # --- Internal helpers ---

    def _load_row(
        self, db: Session, connection_id: str, user_id: str, include_deleted: bool = False
    ) -> Connection:
        row = db.get(Connection, connection_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError("Connection", connection_id)
        if row.deleted_at is not None and not include_deleted:
            raise NotFoundError("Connection", connection_id)
        return row

    def _add_log(
        self,
        db: Session,
        row: Connection,
        action: ConnectionAction,
        success: bool = True,
        error: str | None = None,
        context: dict[str, Any] | None = None,
        agent_id: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        db.add(ConnectionLog(
            connection_id=row.id,
            user_id=row.user_id,
            agent_id=agent_id,
            action=action.value,
            success=success,
            error=sanitize_error_message(error),
            context=json.dumps(redact_for_logging(context)) if context else None,
            ip_address=ip_address,
            created_at=utc_now_iso(),
        ))

    def _set_metadata(self, row: Connection, **updates: Any) -> None:
        metadata = _loads(row.metadata_json, {})
        if not isinstance(metadata, dict):
            metadata = {}
        for key, value in updates.items():
            if value is None:
                metadata.pop(key, None)
            else:
                metadata[key] = value
        row.metadata_json = json.dumps(metadata)

    def _encrypt(self, fields: Mapping[str, Any]) -> str:
        return self._cipher.to_storage(self._cipher.encrypt(dict(fields)))

    def _seal(self, row: Connection, fields: Mapping[str, Any], sealed: str) -> None:
        row.config = sealed
        self._set_metadata(row, display=self._catalog.display_projection(row.type, fields))

    def _decrypt_row(self, row: Connection) -> dict[str, Any]:
        try:
            return self._cipher.decrypt(self._cipher.from_storage(row.config))
        except DecryptionFailed as e:
            reference_id = uuid4().hex
            logger.warning(
                "Stored credentials for connection %s could not be decrypted (ref %s)",
                row.id, reference_id,
            )
            self._emit(AuditEntry(
                who=row.user_id, what="decrypt", success=False,
                connection_id=row.id, detail={"reason": e.message},
                reference_id=reference_id,
            ))
            raise DecryptionFailed(reference_id=reference_id) from None

    def _check_scopes(self, connection_type: str, scopes: list[str]) -> list[FieldError]:
        return self._catalog.validate_scopes(connection_type, scopes)

    @staticmethod
    def _normalize_expiry(expires_at: str | None, errors: list[FieldError]) -> str | None:
        if expires_at in (None, ""):
            return None
        try:
            return _parse_iso(expires_at).isoformat()
        except (TypeError, ValueError):
            errors.append(FieldError("expires_at", "INVALID_FORMAT", "expires_at must be an ISO-8601 timestamp"))
            return None

    # --- Connections ---

    async def create(
        self,
        user_id: str,
        connection_type: str,
        name: str,
        fields: Mapping[str, Any],
        scopes: Iterable[str] | None = None,
        description: str | None = None,
        expires_at: str | None = None,
        ip_address: str | None = None,
    ) -> ConnectionView:
        """Validate, probe, encrypt and persist a new connection.

        Nothing is written unless the probe passes.

        Args:
            user_id: Owning user.
            connection_type: Catalog type key.
            name: Display name.
            fields: Candidate credential fields.
            scopes: Requested scopes (defaults to the type's default scopes).
            description: Optional description.
            expires_at: Optional ISO-8601 credential expiry.
            ip_address: Request origin, recorded on the log row.

        Returns:
            View of the new, active connection.

        Raises:
            UnsupportedConnectionType: Unknown type.
            ValidationFailed: Any field, scope, or name problem (all listed).
            ProbeFailed: The provider rejected the credentials.
        """
        fields = _normalize_fields(fields)
        spec = self._catalog.describe(connection_type)
        errors = self._catalog.validate(connection_type, fields)
        requested = list(scopes) if scopes is not None else list(spec.default_scopes)
        errors += self._check_scopes(connection_type, requested)
        if not name or not name.strip():
            errors.append(FieldError("name", "MISSING_FIELD", "Missing required field: name"))
        expiry = self._normalize_expiry(expires_at, errors)
        if errors:
            raise ValidationFailed(errors)

        result = await self._tester.test(connection_type, fields)
        if not result.ok:
            self._emit(AuditEntry(
                who=user_id, what="connection.create", success=False,
                detail={"type": connection_type, "probe": result.detail},
            ))
            raise ProbeFailed(connection_type, result.detail)

        sealed = await asyncio.to_thread(self._encrypt, fields)
        now = utc_now_iso()
        with self._session_factory() as db:
            row = Connection(
                user_id=user_id,
                type=connection_type,
                name=name.strip(),
                description=description,
                scopes=json.dumps(sort_scopes(requested)),
                status=ConnectionStatus.testing.value,
                expires_at=expiry,
                metadata_json="{}",
                created_at=now,
                updated_at=now,
            )
            self._seal(row, fields, sealed)
            self._set_metadata(row, last_probe=result.detail)
            row.status = ConnectionStatus.active.value
            db.add(row)
            db.flush()
            self._add_log(
                db, row, ConnectionAction.created,
                context={"type": connection_type, "scopes": sort_scopes(requested)},
                ip_address=ip_address,
            )
            db.commit()
            view = _row_to_view(row)

        logger.info("Created %s connection %s for user %s", connection_type, view.id, user_id)
        self._emit(AuditEntry(
            who=user_id, what="connection.create", success=True, connection_id=view.id,
        ))
        self._notify(view.id, user_id)
        return view

    def get(self, connection_id: str, user_id: str) -> ConnectionView:
        """Return one connection (soft-deleted ones included).

        Raises:
            NotFoundError: Missing or owned by another user.
        """
        with self._session_factory() as db:
            return _row_to_view(self._load_row(db, connection_id, user_id, include_deleted=True))

    def list(
        self,
        user_id: str,
        connection_type: str | None = None,
        status: str | None = None,
        include_deleted: bool = False,
    ) -> list[ConnectionView]:
        """List a user's connections, oldest first."""
        with self._session_factory() as db:
            stmt = select(Connection).where(Connection.user_id == user_id)
            if connection_type is not None:
                stmt = stmt.where(Connection.type == connection_type)
            if status is not None:
                stmt = stmt.where(Connection.status == status)
            if not include_deleted:
                stmt = stmt.where(Connection.deleted_at.is_(None))
            stmt = stmt.order_by(Connection.created_at, Connection.id)
            return [_row_to_view(row) for row in db.scalars(stmt)]

    async def update(
        self,
        connection_id: str,
        user_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        fields: Mapping[str, Any] | None = None,
        scopes: Iterable[str] | None = None,
        expires_at: str | None = None,
        ip_address: str | None = None,
    ) -> ConnectionView:
        """Update metadata, credentials, or scopes of a connection.

        ``fields`` is merged over the stored credentials; a None or empty
        value removes an optional field. Changed credentials are re-probed.

        Raises:
            NotFoundError: Missing or owned by another user.
            ConnectionNotUsable: The connection is revoked.
            ValidationFailed: Bad fields or scopes, or scopes narrowed
                below an existing agent link's permissions.
            ProbeFailed: New credentials were rejected. Status becomes
                failed and the stored credentials are unchanged.
        """
        with self._session_factory() as db:
            row = self._load_row(db, connection_id, user_id)
            if row.status == ConnectionStatus.revoked.value:
                raise ConnectionNotUsable(connection_id, row.status, "Revoked connections cannot be updated")
            connection_type = row.type
            links = list(db.scalars(
                select(AgentConnection).where(AgentConnection.connection_id == connection_id)
            ))
            link_permissions = [(link.agent_id, set(_loads(link.permissions, []))) for link in links]

        current: dict[str, Any] | None = None
        if fields is not None:
            try:
                current = await asyncio.to_thread(self._decrypt_row, row)
            except DecryptionFailed:
                current = {}

        errors: list[FieldError] = []
        merged: dict[str, Any] | None = None
        if fields is not None:
            merged = _normalize_fields({**(current or {}), **fields})
            errors += self._catalog.validate(connection_type, merged)

        new_scopes: list[str] | None = None
        if scopes is not None:
            new_scopes = list(scopes)
            errors += self._check_scopes(connection_type, new_scopes)
            for agent_id, permissions in link_permissions:
                lost = sort_scopes(permissions - set(new_scopes))
                if lost:
                    errors.append(FieldError(
                        "scopes", "SCOPE_IN_USE",
                        f"Agent {agent_id} holds permissions {', '.join(lost)} on this connection",
                    ))
        if name is not None and not name.strip():
            errors.append(FieldError("name", "MISSING_FIELD", "Missing required field: name"))
        expiry = self._normalize_expiry(expires_at, errors)
        if errors:
            raise ValidationFailed(errors)

        credentials_changed = merged is not None and merged != current
        result: ProbeResult | None = None
        sealed: str | None = None
        if credentials_changed:
            result = await self._tester.test(connection_type, merged)
            if result.ok:
                sealed = await asyncio.to_thread(self._encrypt, merged)

        with self._session_factory() as db:
            row = self._load_row(db, connection_id, user_id)
            if row.status == ConnectionStatus.revoked.value:
                raise ConnectionNotUsable(connection_id, row.status, "Revoked connections cannot be updated")

            if result is not None and not result.ok:
                if row.status != ConnectionStatus.suspended.value:
                    row.status = ConnectionStatus.failed.value
                row.last_error_code = result.error_code or "PROBE_FAILED"
                row.error_message = result.detail
                row.updated_at = utc_now_iso()
                self._set_metadata(row, last_probe=result.detail)
                self._add_log(
                    db, row, ConnectionAction.tested, success=False,
                    error=result.detail, ip_address=ip_address,
                )
                db.commit()
                self._notify(connection_id, user_id)
                raise ProbeFailed(connection_type, result.detail, connection_id=connection_id)

            changes: list[str] = []
            if result is not None and merged is not None and sealed is not None:
                self._seal(row, merged, sealed)
                self._set_metadata(row, last_probe=result.detail)
                row.last_error_code = None
                row.error_message = None
                if row.status != ConnectionStatus.suspended.value:
                    row.status = ConnectionStatus.active.value
                changes.append("credentials")
            if name is not None:
                row.name = name.strip()
                changes.append("name")
            if description is not None:
                row.description = description
                changes.append("description")
            if new_scopes is not None:
                row.scopes = json.dumps(sort_scopes(new_scopes))
                changes.append("scopes")
            if expires_at is not None:
                row.expires_at = expiry
                changes.append("expires_at")
            row.updated_at = utc_now_iso()
            self._add_log(
                db, row, ConnectionAction.updated,
                context={"changed": changes}, ip_address=ip_address,
            )
            db.commit()
            view = _row_to_view(row)

        self._emit(AuditEntry(
            who=user_id, what="connection.update", success=True,
            connection_id=connection_id, detail={"changed": changes},
        ))
        self._notify(connection_id, user_id)
        return view

    async def retest(
        self,
        connection_id: str,
        user_id: str,
        fields: Mapping[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> TestOutcome:
        """Probe a stored connection, optionally with candidate credentials.

        A pass stores the verified credentials and moves the connection to
        active; a fail moves it to failed.

        Raises:
            NotFoundError: Missing or owned by another user.
            ConnectionNotUsable: The connection is suspended or revoked.
            ValidationFailed: Candidate fields are malformed.
            DecryptionFailed: Stored credentials cannot be opened. Carries
                only a reference id into the audit log.
        """
        with self._session_factory() as db:
            row = self._load_row(db, connection_id, user_id)
            if row.status in (ConnectionStatus.suspended.value, ConnectionStatus.revoked.value):
                raise ConnectionNotUsable(connection_id, row.status, f"Cannot test a {row.status} connection")
            connection_type = row.type

        if fields is None:
            candidate = await asyncio.to_thread(self._decrypt_row, row)
        else:
            try:
                current = await asyncio.to_thread(self._decrypt_row, row)
            except DecryptionFailed:
                current = {}
            candidate = _normalize_fields({**current, **fields})

        errors = self._catalog.validate(connection_type, candidate)
        if errors:
            raise ValidationFailed(errors)

        result = await self._tester.test(connection_type, candidate)
        sealed = None
        if result.ok and fields is not None:
            sealed = await asyncio.to_thread(self._encrypt, candidate)

        with self._session_factory() as db:
            row = self._load_row(db, connection_id, user_id)
            # Suspension or revocation during the probe wins over its result.
            if row.status not in (ConnectionStatus.suspended.value, ConnectionStatus.revoked.value):
                if result.ok:
                    if sealed is not None:
                        self._seal(row, candidate, sealed)
                    row.status = ConnectionStatus.active.value
                    row.last_error_code = None
                    row.error_message = None
                else:
                    row.status = ConnectionStatus.failed.value
                    row.last_error_code = result.error_code or "PROBE_FAILED"
                    row.error_message = result.detail
                self._set_metadata(row, last_probe=result.detail)
                row.updated_at = utc_now_iso()
            self._add_log(
                db, row, ConnectionAction.tested, success=result.ok,
                error=None if result.ok else result.detail, ip_address=ip_address,
            )
            db.commit()
            view = _row_to_view(row)

        self._notify(connection_id, user_id)
        return TestOutcome(connection=view, result=result)

    def set_status(
        self,
        connection_id: str,
        new_status: str,
        *,
        actor: str,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> ConnectionView:
        """Apply a lifecycle transition, enforcing who may make it.

        Args:
            connection_id: Connection to change.
            new_status: Target ConnectionStatus value.
            actor: ACTOR_OWNER, ACTOR_MONITOR or ACTOR_SYSTEM.
            user_id: Required for owner transitions (ownership check).
            reason: Recorded in metadata and the log row.

        Returns:
            Updated view. Suspending an already suspended connection is a no-op.

        Raises:
            NotFoundError: Missing, or not owned by ``user_id``.
            InvalidStatusTransition: Transition not allowed for this actor.
        """
        target = ConnectionStatus(new_status)
        with self._session_factory() as db:
            row = db.get(Connection, connection_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                raise NotFoundError("Connection", connection_id)
            current = row.status

            if current == ConnectionStatus.revoked.value:
                raise InvalidStatusTransition(connection_id, current, target.value, "revoked is terminal")

            if target is ConnectionStatus.suspended:
                if actor != ACTOR_MONITOR:
                    raise InvalidStatusTransition(
                        connection_id, current, target.value, "only the security monitor suspends"
                    )
                if current == ConnectionStatus.suspended.value:
                    return _row_to_view(row)
                row.status = target.value
                self._set_metadata(row, suspension_reason=reason, suspended_at=utc_now_iso())
                self._add_log(
                    db, row, ConnectionAction.auto_suspended,
                    error=reason, context={"previous_status": current},
                )
            elif target is ConnectionStatus.revoked:
                if actor != ACTOR_OWNER or user_id is None:
                    raise InvalidStatusTransition(
                        connection_id, current, target.value, "only the owner revokes"
                    )
                row.status = target.value
                self._set_metadata(row, revocation_reason=reason, revoked_at=utc_now_iso())
                self._add_log(db, row, ConnectionAction.revoked, context={"reason": reason})
            elif target is ConnectionStatus.testing:
                if actor != ACTOR_OWNER or current != ConnectionStatus.suspended.value:
                    raise InvalidStatusTransition(
                        connection_id, current, target.value, "only the owner reactivates a suspended connection"
                    )
                row.status = target.value
                self._set_metadata(row, suspension_reason=None, reactivated_at=utc_now_iso())
                self._add_log(db, row, ConnectionAction.reactivated)
            else:
                if actor != ACTOR_SYSTEM or current == ConnectionStatus.suspended.value:
                    raise InvalidStatusTransition(
                        connection_id, current, target.value, "set by probe results only"
                    )
                row.status = target.value

            row.updated_at = utc_now_iso()
            db.commit()
            view = _row_to_view(row)

        logger.info("Connection %s status %s -> %s (%s)", connection_id, current, view.status, actor)
        self._emit(AuditEntry(
            who=user_id or actor, what=f"connection.status.{view.status}", success=True,
            connection_id=connection_id, detail={"from": current, "reason": reason},
        ))
        self._notify(connection_id, view.user_id)
        return view

    def revoke(self, connection_id: str, user_id: str, reason: str | None = None) -> ConnectionView:
        """Owner revocation. Terminal."""
        return self.set_status(
            connection_id, ConnectionStatus.revoked.value,
            actor=ACTOR_OWNER, user_id=user_id, reason=reason,
        )

    def suspend(self, connection_id: str, reason: str) -> ConnectionView:
        """Security monitor suspension. Idempotent."""
        return self.set_status(
            connection_id, ConnectionStatus.suspended.value,
            actor=ACTOR_MONITOR, reason=reason,
        )

    def reactivate(self, connection_id: str, user_id: str) -> ConnectionView:
        """Owner reactivation of a suspended connection; moves it to testing."""
        return self.set_status(
            connection_id, ConnectionStatus.testing.value,
            actor=ACTOR_OWNER, user_id=user_id,
        )

    def soft_delete(self, connection_id: str, user_id: str) -> ConnectionView:
        """Logically delete a connection: drop its links, revoke, stamp deleted_at.

        Raises:
            NotFoundError: Missing, already deleted, or owned by another user.
            ConnectionInUse: An agent link marks this connection required.
        """
        with self._session_factory() as db:
            row = self._load_row(db, connection_id, user_id)
            links = list(db.scalars(
                select(AgentConnection).where(AgentConnection.connection_id == connection_id)
            ))
            required = sorted(link.agent_id for link in links if link.is_required)
            if required:
                raise ConnectionInUse(connection_id, required)
            db.execute(delete(AgentConnection).where(AgentConnection.connection_id == connection_id))
            previous = row.status
            now = utc_now_iso()
            row.status = ConnectionStatus.revoked.value
            row.deleted_at = now
            row.updated_at = now
            self._add_log(
                db, row, ConnectionAction.deleted,
                context={"previous_status": previous, "links_removed": len(links)},
            )
            db.commit()
            view = _row_to_view(row)

        self._emit(AuditEntry(
            who=user_id, what="connection.delete", success=True, connection_id=connection_id,
        ))
        self._notify(connection_id, user_id)
        return view

    # --- Usage ---

    def load_usable(self, connection_id: str, user_id: str) -> ConnectionView:
        """Return the connection if it may be used right now.

        Raises:
            ConnectionNotUsable: Missing, deleted, expired, or not active.
        """
        with self._session_factory() as db:
            row = db.get(Connection, connection_id)
            if row is None or row.user_id != user_id:
                raise ConnectionNotUsable(connection_id, "missing")
            if row.deleted_at is not None:
                raise ConnectionNotUsable(connection_id, "deleted")
            if row.status != ConnectionStatus.active.value:
                raise ConnectionNotUsable(connection_id, row.status)
            if row.expires_at and _parse_iso(row.expires_at) <= datetime.now(UTC):
                raise ConnectionNotUsable(connection_id, "expired")
            return _row_to_view(row)

    def open_credentials(self, connection_id: str, user_id: str) -> tuple[ConnectionView, dict[str, Any]]:
        """Load a usable connection and decrypt its credentials.

        Raises:
            ConnectionNotUsable: See load_usable.
            DecryptionFailed: The stored blob cannot be opened.
        """
        self.load_usable(connection_id, user_id)
        with self._session_factory() as db:
            row = db.get(Connection, connection_id)
            if row is None:
                raise ConnectionNotUsable(connection_id, "missing")
            return _row_to_view(row), self._decrypt_row(row)

    def mark_used(
        self,
        connection_ids: Iterable[str],
        user_id: str,
        *,
        agent_id: str | None = None,
        success: bool = True,
        error: str | None = None,
        context: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> None:
        """Write one 'used' log row per connection; stamp last_used on success."""
        now = utc_now_iso()
        with self._session_factory() as db:
            for connection_id in connection_ids:
                row = db.get(Connection, connection_id)
                if row is None or row.user_id != user_id:
                    continue
                if success:
                    row.last_used = now
                self._add_log(
                    db, row, ConnectionAction.used, success=success, error=error,
                    context=context, agent_id=agent_id, ip_address=ip_address,
                )
            db.commit()

    def connection_logs(self, connection_id: str, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Return a connection's log rows, newest first.

        Raises:
            NotFoundError: Missing or owned by another user.
        """
        with self._session_factory() as db:
            self._load_row(db, connection_id, user_id, include_deleted=True)
            rows = db.scalars(
                select(ConnectionLog)
                .where(ConnectionLog.connection_id == connection_id)
                .order_by(ConnectionLog.created_at.desc())
                .limit(limit)
            )
            return [
                {
                    "id": r.id,
                    "action": r.action,
                    "success": r.success,
                    "error": r.error,
                    "agent_id": r.agent_id,
                    "context": _loads(r.context, None),
                    "ip_address": r.ip_address,
                    "created_at": r.created_at,
                }
                for r in rows
            ]

    # --- Agents and links ---

    def register_agent(
        self, user_id: str, name: str, capabilities: Mapping[str, Any] | None = None
    ) -> AgentView:
        """Create an agent owned by ``user_id``."""
        if not name or not name.strip():
            raise ValidationFailed([FieldError("name", "MISSING_FIELD", "Missing required field: name")])
        with self._session_factory() as db:
            row = Agent(
                user_id=user_id,
                name=name.strip(),
                capabilities=json.dumps(dict(capabilities or {})),
                is_active=True,
                created_at=utc_now_iso(),
            )
            db.add(row)
            db.commit()
            return _agent_to_view(row)

    def get_agent(self, agent_id: str, user_id: str) -> AgentView:
        """Raises NotFoundError if missing or owned by another user."""
        with self._session_factory() as db:
            row = db.get(Agent, agent_id)
            if row is None or row.user_id != user_id:
                raise NotFoundError("Agent", agent_id)
            return _agent_to_view(row)

    def set_agent_active(self, agent_id: str, user_id: str, is_active: bool) -> AgentView:
        with self._session_factory() as db:
            row = db.get(Agent, agent_id)
            if row is None or row.user_id != user_id:
                raise NotFoundError("Agent", agent_id)
            row.is_active = is_active
            db.commit()
            return _agent_to_view(row)

    def link_agent(
        self,
        agent_id: str,
        connection_id: str,
        user_id: str,
        permissions: Iterable[str] | None = None,
        is_required: bool = False,
    ) -> LinkView:
        """Grant an agent scoped use of a connection (creates or replaces the link).

        Raises:
            NotFoundError: Agent or connection missing or not owned by the user.
            ConnectionNotUsable: The connection is not active.
            ValidationFailed: Permissions are unknown or exceed the connection's scopes.
        """
        with self._session_factory() as db:
            agent = db.get(Agent, agent_id)
            if agent is None or agent.user_id != user_id:
                raise NotFoundError("Agent", agent_id)
            row = self._load_row(db, connection_id, user_id)
            if row.status != ConnectionStatus.active.value:
                raise ConnectionNotUsable(connection_id, row.status, "Only active connections can be linked")

            scopes = set(_loads(row.scopes, []))
            granted = list(permissions) if permissions is not None else sorted(scopes)
            errors = [
                FieldError("permissions", "UNKNOWN_SCOPE", f"Unknown scope: {p}")
                for p in granted if p not in ALL_SCOPES
            ]
            if not granted:
                errors.append(FieldError("permissions", "EMPTY_SCOPES", "At least one permission is required"))
            excess = sort_scopes(p for p in granted if p in ALL_SCOPES and p not in scopes)
            if excess:
                errors.append(FieldError(
                    "permissions", "EXCEEDS_SCOPES",
                    f"Permissions exceed connection scopes: {', '.join(excess)}",
                ))
            if errors:
                raise ValidationFailed(errors)

            link = db.scalars(
                select(AgentConnection).where(
                    AgentConnection.agent_id == agent_id,
                    AgentConnection.connection_id == connection_id,
                )
            ).first()
            if link is None:
                link = AgentConnection(
                    agent_id=agent_id, connection_id=connection_id, created_at=utc_now_iso()
                )
                db.add(link)
            link.permissions = json.dumps(sort_scopes(granted))
            link.is_required = is_required
            db.commit()
            view = _link_to_view(link)

        self._emit(AuditEntry(
            who=user_id, what="agent.link", success=True, connection_id=connection_id,
            detail={"agent_id": agent_id, "permissions": list(view.permissions), "required": is_required},
        ))
        return view

    def unlink_agent(self, agent_id: str, connection_id: str, user_id: str) -> None:
        """Remove an agent link.

        Raises:
            NotFoundError: No such link for this user.
        """
        with self._session_factory() as db:
            agent = db.get(Agent, agent_id)
            if agent is None or agent.user_id != user_id:
                raise NotFoundError("Agent", agent_id)
            link = db.scalars(
                select(AgentConnection).where(
                    AgentConnection.agent_id == agent_id,
                    AgentConnection.connection_id == connection_id,
                )
            ).first()
            if link is None:
                raise NotFoundError("AgentConnection", f"{agent_id}/{connection_id}")
            db.delete(link)
            db.commit()
        self._emit(AuditEntry(
            who=user_id, what="agent.unlink", success=True, connection_id=connection_id,
            detail={"agent_id": agent_id},
        ))

    def links_for_agent(self, agent_id: str, user_id: str) -> tuple[AgentView, list[LinkView]]:
        """Return the agent and every link with its connection view attached.

        Links to connections in any status are returned; callers decide usability.

        Raises:
            NotFoundError: Agent missing or owned by another user.
        """
        with self._session_factory() as db:
            agent = db.get(Agent, agent_id)
            if agent is None or agent.user_id != user_id:
                raise NotFoundError("Agent", agent_id)
            rows = db.execute(
                select(AgentConnection, Connection)
                .join(Connection, Connection.id == AgentConnection.connection_id)
                .where(AgentConnection.agent_id == agent_id)
            ).all()
            links = [_link_to_view(link, _row_to_view(conn)) for link, conn in rows]
            return _agent_to_view(agent), links
