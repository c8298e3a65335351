"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag).
"""

import json
from typing import Any

from rich.console import Console
from rich.table import Table

from agentvault.services.connection_store import ConnectionView
from agentvault.services.security_monitor import AlertView

console = Console()

STATUS_COLORS = {
    "active": "green",
    "testing": "blue",
    "failed": "red",
    "suspended": "yellow",
    "revoked": "dim",
}

SEVERITY_COLORS = {"low": "white", "medium": "yellow", "high": "red"}


def _render(table: Table) -> str:
    with console.capture() as capture:
        console.print(table)
    return capture.get()


def format_types_table(listing: list[dict[str, Any]], as_json: bool = False) -> str:
    """Format the catalog's public listing."""
    if as_json:
        return json.dumps(listing, indent=2)

    table = Table(title="Connection Types", show_lines=True)
    table.add_column("Type", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Required")
    table.add_column("Optional", style="dim")
    table.add_column("Scopes")
    for entry in listing:
        table.add_row(
            entry["type"],
            entry["name"],
            ", ".join(entry["requiredFields"]),
            ", ".join(entry["optionalFields"]) or "-",
            ", ".join(entry["supportedScopes"]),
        )
    return _render(table)


def format_connections_table(views: list[ConnectionView], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([v.to_dict() for v in views], indent=2)

    if not views:
        return "No connections found."

    table = Table(title="Connections", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Scopes")
    table.add_column("Last Used")
    for view in views:
        color = STATUS_COLORS.get(view.status, "white")
        table.add_row(
            view.id[:12],
            view.type,
            view.name,
            f"[{color}]{view.status}[/{color}]",
            ", ".join(view.scopes),
            view.last_used[:19] if view.last_used else "-",
        )
    return _render(table)


def format_alerts_table(alerts: list[AlertView], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([a.to_dict() for a in alerts], indent=2)

    if not alerts:
        return "No alerts."

    table = Table(title="Security Alerts", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Connection")
    table.add_column("Status")
    table.add_column("Created")
    for alert in alerts:
        color = SEVERITY_COLORS.get(alert.severity, "white")
        table.add_row(
            alert.id[:12],
            alert.alert_type,
            f"[{color}]{alert.severity}[/{color}]",
            (alert.connection_id or "-")[:12],
            alert.status,
            alert.created_at[:19],
        )
    return _render(table)
