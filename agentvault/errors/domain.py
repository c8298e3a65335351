"""Typed domain exceptions for the connection vault and broker.

These exceptions give the API layer a stronger contract than string
matching. Routes catch DomainError and map ``status_code`` and
``to_dict()`` onto the JSON error envelope.

Usage:
    # In service layer
    raise ConnectionNotUsable(connection_id, "revoked")

    # In route handler
    except DomainError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.to_dict()})
"""

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class FieldError:
    """One violated rule for a connection field or scope."""

    field: str
    code: str
    message: str


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "AV-0000"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the API error envelope body."""
        return {"code": self.code, "message": self.message}


class ValidationFailed(DomainError):
    """Bad fields or scopes. Maps to HTTP 400.

    Carries every violation so a UI can show all problems at once.
    """

    code = "AV-1001"
    status_code = 400

    def __init__(self, errors: list[FieldError], message: str | None = None) -> None:
        self.errors = list(errors)
        super().__init__(
            message or f"{len(self.errors)} validation error(s): "
            + "; ".join(e.message for e in self.errors)
        )

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["errors"] = [asdict(e) for e in self.errors]
        return body


class UnsupportedConnectionType(ValidationFailed):
    """Connection type is not registered in the catalog."""

    code = "AV-1002"

    def __init__(self, connection_type: str) -> None:
        self.connection_type = connection_type
        super().__init__(
            [FieldError("type", "UNSUPPORTED_TYPE", f"Unsupported connection type: {connection_type}")],
            message=f"Unsupported connection type: {connection_type}",
        )


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    code = "AV-1003"
    status_code = 404

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class DecryptionFailed(DomainError):
    """Blob is corrupt, tampered with, or was sealed under another master secret.

    The cipher raises it with the concrete cause. The store re-raises it
    with a generic message and a reference id into the audit log.
    """

    code = "AV-2001"
    status_code = 500

    def __init__(
        self,
        message: str = "Stored credentials could not be decrypted",
        reference_id: str | None = None,
    ) -> None:
        if reference_id:
            message = f"{message} (reference {reference_id})"
        super().__init__(message)
        self.reference_id = reference_id

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.reference_id:
            body["reference_id"] = self.reference_id
        return body


class MasterSecretMissing(DomainError):
    """No master secret configured in a persistent (production) mode."""

    code = "AV-2002"
    status_code = 500


class ConnectionNotUsable(DomainError):
    """Connection is inactive, suspended, revoked, or missing. Maps to HTTP 409."""

    code = "AV-3001"
    status_code = 409

    def __init__(self, connection_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message or f"Connection '{connection_id}' is not usable (status: {status})")
        self.connection_id = connection_id
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.connection_id:
            body["connection_id"] = self.connection_id
        body["status"] = self.status
        return body


class InvalidStatusTransition(DomainError):
    """Requested lifecycle change is not allowed. Maps to HTTP 409."""

    code = "AV-3003"
    status_code = 409

    def __init__(self, connection_id: str, current: str, requested: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Cannot move connection '{connection_id}' from {current} to {requested}{detail}"
        )
        self.connection_id = connection_id
        self.current = current
        self.requested = requested


class ConnectionInUse(DomainError):
    """Connection is still required by an agent. Maps to HTTP 409."""

    code = "AV-3004"
    status_code = 409

    def __init__(self, connection_id: str, agent_ids: list[str]) -> None:
        super().__init__(
            f"Connection '{connection_id}' is required by agent(s): {', '.join(agent_ids)}"
        )
        self.connection_id = connection_id
        self.agent_ids = list(agent_ids)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["agent_ids"] = self.agent_ids
        return body


class ProbeFailed(DomainError):
    """Live credential probe failed. Detail is already scrubbed of secrets."""

    code = "AV-3002"
    status_code = 400

    def __init__(self, connection_type: str, detail: str, connection_id: str | None = None) -> None:
        super().__init__(f"Connection test failed for {connection_type}: {detail}")
        self.connection_type = connection_type
        self.detail = detail
        self.connection_id = connection_id

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["detail"] = self.detail
        if self.connection_id:
            body["connection_id"] = self.connection_id
        return body


@dataclass(frozen=True)
class UnmetRequirement:
    """A required agent link that could not be loaded."""

    connection_id: str
    connection_type: str
    name: str
    reason: str
    reference_id: str | None = None


class MissingRequiredConnection(ConnectionNotUsable):
    """One or more required agent links are unusable. Lists every one.

    Catchable as ConnectionNotUsable; ``connection_id`` and ``status``
    describe the first unmet link.
    """

    code = "AV-4001"
    status_code = 409

    def __init__(
        self, agent_id: str, missing: list[UnmetRequirement], reference_id: str | None = None
    ) -> None:
        self.agent_id = agent_id
        self.missing = list(missing)
        self.reference_id = reference_id
        names = ", ".join(f"{m.name} ({m.connection_type})" for m in self.missing)
        first = self.missing[0] if self.missing else None
        super().__init__(
            first.connection_id if first else "",
            first.reason if first else "missing",
            f"Missing required connections: {names}",
        )

    def to_dict(self) -> dict[str, Any]:
        body = DomainError.to_dict(self)
        body["missing"] = [asdict(m) for m in self.missing]
        if self.reference_id:
            body["reference_id"] = self.reference_id
        return body


class NoUsableConnection(ConnectionNotUsable):
    """No linked connection type can serve the agent's capability.

    Catchable as ConnectionNotUsable with status ``unavailable``.
    """

    code = "AV-4002"
    status_code = 409

    def __init__(
        self, capability: str, accepted_types: list[str],
        rejected: list[dict[str, str]] | None = None,
        reference_id: str | None = None,
    ) -> None:
        self.capability = capability
        self.accepted_types = list(accepted_types)
        self.rejected = list(rejected or [])
        self.reference_id = reference_id
        super().__init__(
            self.rejected[0]["connection_id"] if self.rejected else "",
            "unavailable",
            f"No usable connection for capability '{capability}'. "
            f"Accepted types: {', '.join(self.accepted_types)}",
        )

    def to_dict(self) -> dict[str, Any]:
        body = DomainError.to_dict(self)
        body["capability"] = self.capability
        body["accepted_types"] = self.accepted_types
        body["rejected"] = self.rejected
        if self.reference_id:
            body["reference_id"] = self.reference_id
        return body

class ExecutionFailed(DomainError):
    """Integration call failed. Only a reference id is surfaced to the caller."""

    code = "AV-4003"
    status_code = 502

    def __init__(self, reference_id: str) -> None:
        super().__init__(f"Execution failed (reference {reference_id})")
        self.reference_id = reference_id

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["reference_id"] = self.reference_id
        return body


class RateLimited(DomainError):
    """Security monitor throttling. Maps to HTTP 429."""

    code = "AV-5001"
    status_code = 429

    def __init__(self, action: str, expires_at: str) -> None:
        super().__init__(f"Rate limited for '{action}' until {expires_at}")
        self.action = action
        self.expires_at = expires_at

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["action"] = self.action
        body["expires_at"] = self.expires_at
        return body
