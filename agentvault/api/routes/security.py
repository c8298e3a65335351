"""API routes for security alerts, events, and reports."""

from fastapi import APIRouter, Depends, Query

from agentvault.api.dependencies import get_broker, get_user_id
from agentvault.services.broker import ConnectionBroker

router = APIRouter(prefix="/security", tags=["security"])


@router.get("/alerts")
def list_alerts(
    status: str | None = Query(None, description="active or resolved"),
    limit: int = Query(100, ge=1, le=1000),
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    alerts = broker.monitor.alerts(user_id, status=status, limit=limit)
    return {"alerts": [a.to_dict() for a in alerts]}


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: str,
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    return broker.monitor.resolve_alert(alert_id, user_id).to_dict()


@router.get("/events")
def list_events(
    limit: int = Query(100, ge=1, le=1000),
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    return {"events": [e.to_dict() for e in broker.monitor.events(user_id, limit=limit)]}


@router.get("/report")
def security_report(
    days: int = Query(7, ge=1, le=90),
    user_id: str = Depends(get_user_id),
    broker: ConnectionBroker = Depends(get_broker),
):
    return broker.monitor.security_report(user_id, days=days)
