"""AgentVault CLI: local administration of the vault and broker.

Usage:
    agentvault init-db              Create the state database tables
    agentvault serve                Run the HTTP API with uvicorn
    agentvault generate-secret      Print a new master secret
    agentvault types                List supported connection types
    agentvault connections -u ID    List a user's connections
    agentvault alerts -u ID         List a user's security alerts
    agentvault sweep                Run retention and expiry cleanup
    agentvault config show          Print the resolved configuration
"""

import logging
import os
from typing import Optional

import typer
from rich.console import Console
from sqlalchemy.engine import make_url

from agentvault import __version__
from agentvault.cli.output import (
    format_alerts_table,
    format_connections_table,
    format_types_table,
)
from agentvault.config import AgentVaultConfig, load_config
from agentvault.db.connection import (
    close_db,
    create_db_engine,
    create_session_factory,
    get_database_url,
    init_db,
)
from agentvault.errors import MasterSecretMissing
from agentvault.services.broker import ConnectionBroker
from agentvault.services.connection_catalog import default_catalog
from agentvault.services.credential_cipher import generate_master_secret, master_secret_source
from agentvault.utils.paths import ensure_dirs_exist

_log = logging.getLogger(__name__)


def _display_url() -> str:
    return make_url(get_database_url()).render_as_string(hide_password=True)


app = typer.Typer(
    name="agentvault",
    help="Encrypted connection vault and execution broker",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to agentvault.yaml config file"
    ),
):
    """AgentVault CLI."""
    global _config_path
    _config_path = config


def _load() -> AgentVaultConfig:
    try:
        return load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _print(output: str, raw: bool = False) -> None:
    """Print formatter output. Raw JSON bypasses Rich markup and wrapping."""
    if raw:
        typer.echo(output)
    else:
        console.print(output)


def _open_broker(cfg: AgentVaultConfig):
    """Build a broker against the configured database. Caller closes the engine."""
    ensure_dirs_exist()
    engine = create_db_engine()
    init_db(engine)
    try:
        broker = ConnectionBroker.from_config(cfg, create_session_factory(engine))
    except (MasterSecretMissing, ValueError) as e:
        close_db(engine)
        console.print(f"[red]Cannot open vault:[/red] {e}")
        raise typer.Exit(1)
    return broker, engine


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]AgentVault[/bold] v{__version__}")
    console.print(f"  Master secret source: {master_secret_source()['source']}")


@app.command("init-db")
def init_db_command():
    """Create all state database tables (safe to re-run)."""
    ensure_dirs_exist()
    engine = create_db_engine()
    try:
        init_db(engine)
    finally:
        close_db(engine)
    console.print(f"[green]Database ready:[/green] {_display_url()}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="uvicorn log level"),
):
    """Run the HTTP API."""
    import uvicorn

    cfg = _load()
    if _config_path:
        os.environ["AGENTVAULT_CONFIG_PATH"] = _config_path
    host = host or cfg.server.host
    port = port or cfg.server.port
    _log.info("Serving AgentVault API on %s:%d", host, port)
    uvicorn.run(
        "agentvault.api.main:app",
        host=host,
        port=port,
        workers=1,
        log_level=log_level or cfg.server.log_level,
        lifespan="on",
    )


@app.command("generate-secret")
def generate_secret():
    """Print a new base64 master secret for AGENTVAULT_MASTER_SECRET."""
    typer.echo(generate_master_secret())


@app.command()
def types(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List supported connection types."""
    _print(format_types_table(default_catalog().public_listing(), as_json=json_output), raw=json_output)


@app.command()
def connections(
    user: str = typer.Option(..., "--user", "-u", help="Owning user id"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List a user's connections (no credentials shown)."""
    broker, engine = _open_broker(_load())
    try:
        views = broker.store.list(user, status=status)
    finally:
        close_db(engine)
    _print(format_connections_table(views, as_json=json_output), raw=json_output)


@app.command()
def alerts(
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="active or resolved"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List a user's security alerts."""
    broker, engine = _open_broker(_load())
    try:
        rows = broker.monitor.alerts(user, status=status)
    finally:
        close_db(engine)
    _print(format_alerts_table(rows, as_json=json_output), raw=json_output)


@app.command()
def sweep():
    """Delete expired security data, rate limits, and stale cache entries."""
    broker, engine = _open_broker(_load())
    try:
        result = broker.sweep()
    finally:
        close_db(engine)
    for key, count in result.items():
        console.print(f"  {key}: {count}")
    console.print("[green]Sweep complete.[/green]")


@config_app.command("show")
def config_show():
    """Display the resolved configuration."""
    cfg = _load()
    console.print("[bold]Vault:[/bold]")
    console.print(f"  mode: {cfg.vault.mode}")
    console.print(f"  master secret: {master_secret_source()['source']}")
    console.print("\n[bold]Cache:[/bold]")
    console.print(f"  ttl_seconds: {cfg.cache.ttl_seconds:g}")
    console.print("\n[bold]Monitor:[/bold]")
    console.print(f"  failed_tests_per_hour: {cfg.monitor.failed_tests_per_hour}")
    console.print(f"  connections_created_per_minute: {cfg.monitor.connections_created_per_minute}")
    console.print(f"  revoked_usage_threshold: {cfg.monitor.revoked_usage_threshold}")
    console.print(f"  retention_days: {cfg.monitor.retention_days}")
    console.print("\n[bold]Server:[/bold]")
    console.print(f"  {cfg.server.host}:{cfg.server.port} (log level {cfg.server.log_level})")
    console.print(f"\n[bold]Database:[/bold] {_display_url()}")


if __name__ == "__main__":
    app()
