"""API routes for connection management.

Credential values flow in through request bodies and never back out:
every response is a ConnectionView (metadata plus the display-safe
projection). Domain errors propagate to the app-level handler, which
renders the standard error envelope.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from agentvault.api.dependencies import get_broker, get_client_ip, get_user_agent, get_user_id
from agentvault.services.broker import ConnectionBroker
from agentvault.services.connection_store import TestOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])


# --- Pydantic request models ---


class CreateConnectionRequest(BaseModel):
    """Request body for creating a connection."""

    type: str = Field(..., min_length=1, description="Connection type from the catalog")
    name: str = Field(..., description="Human-readable name")
    fields: dict[str, Any] = Field(default_factory=dict, description="Credential fields")
    scopes: list[str] | None = Field(None, description="Requested scopes (defaults per type)")
    description: str | None = None
    expires_at: str | None = Field(None, description="ISO-8601 credential expiry")


class UpdateConnectionRequest(BaseModel):
    """Partial update. Omitted attributes are left unchanged."""

    name: str | None = None
    description: str | None = None
    fields: dict[str, Any] | None = Field(None, description="Merged over stored credentials")
    scopes: list[str] | None = None
    expires_at: str | None = None


class TestConnectionRequest(BaseModel):
    fields: dict[str, Any] | None = Field(None, description="Candidate credentials to verify")


class RevokeConnectionRequest(BaseModel):
    reason: str | None = None


def _outcome_response(outcome: TestOutcome) -> dict[str, Any]:
    return {
        "ok": outcome.result.ok,
        "detail": outcome.result.detail,
        "error_code": outcome.result.error_code,
        "connection": outcome.connection.to_dict(),
    }


@router.get("/types")
def list_connection_types(broker: ConnectionBroker = Depends(get_broker)):
    """Supported connection types with their field requirements."""
    return {"types": broker.catalog.public_listing()}


@router.get("")
def list_connections(
    type: str | None = Query(None),
    status: str | None = Query(None),
    include_deleted: bool = Query(False),
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    """List the caller's connections (no credentials exposed)."""
    views = broker.store.list(
        user_id, connection_type=type, status=status, include_deleted=include_deleted
    )
    return {"connections": [v.to_dict() for v in views], "total": len(views)}


@router.post("", status_code=201)
async def create_connection(
    body: CreateConnectionRequest,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
    ip_address: str | None = Depends(get_client_ip),
    user_agent: str | None = Depends(get_user_agent),
):
    """Validate, probe, and store a new connection."""
    view = await broker.create_connection(
        user_id,
        body.type,
        body.name,
        body.fields,
        scopes=body.scopes,
        description=body.description,
        expires_at=body.expires_at,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return view.to_dict()


@router.get("/{connection_id}")
def get_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    return broker.store.get(connection_id, user_id).to_dict()


@router.patch("/{connection_id}")
async def update_connection(
    connection_id: str,
    body: UpdateConnectionRequest,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
    ip_address: str | None = Depends(get_client_ip),
    user_agent: str | None = Depends(get_user_agent),
):
    """Update metadata, scopes, or credentials. New credentials are re-probed."""
    view = await broker.update_connection(
        connection_id,
        user_id,
        ip_address=ip_address,
        user_agent=user_agent,
        **body.model_dump(exclude_unset=True),
    )
    return view.to_dict()


@router.post("/{connection_id}/test")
async def test_connection(
    connection_id: str,
    body: TestConnectionRequest | None = None,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
    ip_address: str | None = Depends(get_client_ip),
    user_agent: str | None = Depends(get_user_agent),
):
    """Re-probe stored (or candidate) credentials. Returns 200 with ok=false on failure."""
    outcome = await broker.test_connection(
        connection_id,
        user_id,
        body.fields if body is not None else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return _outcome_response(outcome)


@router.post("/{connection_id}/revoke")
def revoke_connection(
    connection_id: str,
    body: RevokeConnectionRequest | None = None,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    reason = body.reason if body is not None else None
    return broker.revoke_connection(connection_id, user_id, reason).to_dict()


@router.post("/{connection_id}/reactivate")
async def reactivate_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
    ip_address: str | None = Depends(get_client_ip),
    user_agent: str | None = Depends(get_user_agent),
):
    """Reactivate a suspended connection and re-probe it."""
    outcome = await broker.reactivate_connection(
        connection_id, user_id, ip_address=ip_address, user_agent=user_agent
    )
    return _outcome_response(outcome)


@router.delete("/{connection_id}")
def delete_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    """Soft delete: links removed, status revoked, deleted_at stamped."""
    return broker.delete_connection(connection_id, user_id).to_dict()


@router.get("/{connection_id}/logs")
def connection_logs(
    connection_id: str,
    limit: int = Query(100, ge=1, le=1000),
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    return {"logs": broker.store.connection_logs(connection_id, user_id, limit=limit)}
