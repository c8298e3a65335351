"""API routes for agents, their connection links, and execution."""

from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from agentvault.api.dependencies import get_broker, get_client_ip, get_user_agent, get_user_id
from agentvault.services.broker import ConnectionBroker

router = APIRouter(prefix="/agents", tags=["agents"])


class CreateAgentRequest(BaseModel):
    name: str
    capabilities: dict[str, Any] = Field(default_factory=dict)


class LinkConnectionRequest(BaseModel):
    permissions: list[str] | None = Field(None, description="Defaults to the connection's scopes")
    is_required: bool = False


class ExecuteRequest(BaseModel):
    input: str = Field(..., min_length=1)
    options: dict[str, Any] = Field(default_factory=dict)


@router.post("", status_code=201)
def create_agent(
    body: CreateAgentRequest,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    return broker.store.register_agent(user_id, body.name, body.capabilities).to_dict()


@router.get("/{agent_id}")
def get_agent(
    agent_id: str,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    """Agent metadata and its connection links."""
    agent, links = broker.store.links_for_agent(agent_id, user_id)
    return {**agent.to_dict(), "connections": [link.to_dict() for link in links]}


@router.post("/{agent_id}/connections/{connection_id}", status_code=201)
def link_connection(
    agent_id: str,
    connection_id: str,
    body: LinkConnectionRequest | None = None,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    body = body or LinkConnectionRequest()
    link = broker.store.link_agent(
        agent_id, connection_id, user_id,
        permissions=body.permissions, is_required=body.is_required,
    )
    return link.to_dict()


@router.delete("/{agent_id}/connections/{connection_id}", status_code=204)
def unlink_connection(
    agent_id: str,
    connection_id: str,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    broker.store.unlink_agent(agent_id, connection_id, user_id)
    return Response(status_code=204)


@router.post("/{agent_id}/execute")
async def execute(
    agent_id: str,
    body: ExecuteRequest,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
    ip_address: str | None = Depends(get_client_ip),
    user_agent: str | None = Depends(get_user_agent),
):
    """Route the request to the agent's best usable connection and run it."""
    result = await broker.execute(
        agent_id, user_id, body.input, body.options,
        ip_address=ip_address, user_agent=user_agent,
    )
    return result.to_dict()
