"""FastAPI application for the AgentVault API.

Provides the application factory with routers and exception handlers
configured. The broker is built in the lifespan from configuration
unless one is injected (tests pass a broker wired to in-memory SQLite).
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("agentvault").setLevel(logging.INFO)

from agentvault import __version__
from agentvault.api.middleware.auth import require_api_key, validate_api_key_strength
from agentvault.api.routes import agents, connections, security
from agentvault.config import AgentVaultConfig, load_config
from agentvault.db.connection import close_db, create_db_engine, create_session_factory, init_db
from agentvault.errors import DomainError, get_error
from agentvault.services.broker import ConnectionBroker
from agentvault.services.credential_cipher import master_secret_source

logger = logging.getLogger(__name__)


def _error_body(exc: DomainError) -> dict[str, Any]:
    body = exc.to_dict()
    entry = get_error(exc.code)
    if entry is not None:
        body["title"] = entry.title
        body["remediation"] = entry.remediation
    return {"error": body}


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render DomainError subclasses as the standard error envelope.

    Args:
        request: The incoming request.
        exc: The domain error.

    Returns:
        JSONResponse with the error's HTTP status.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 handler that never echoes submitted values (they may be credentials)."""
    errors = [
        {"loc": list(err.get("loc", ())), "type": err.get("type"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"error": {"code": "REQUEST_INVALID", "message": "Request body is invalid", "errors": errors}},
    )


def create_app(
    broker: ConnectionBroker | None = None,
    config: AgentVaultConfig | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        broker: Pre-built broker. When omitted, one is built at startup
            from ``config`` (or load_config()) against the configured database.
        config: Configuration used when building the broker.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        validate_api_key_strength()
        engine = None
        if getattr(app.state, "broker", None) is None:
            cfg = config or load_config(config_path=os.environ.get("AGENTVAULT_CONFIG_PATH"))
            engine = create_db_engine()
            init_db(engine)
            app.state.broker = ConnectionBroker.from_config(cfg, create_session_factory(engine))
            logger.info("Master secret source: %s", master_secret_source()["source"])
        yield
        if engine is not None:
            close_db(engine)

    app = FastAPI(
        title="AgentVault API",
        description="Encrypted connection vault and connection-aware execution broker",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.broker = broker

    # Optional API key for /api/* when AGENTVAULT_API_KEY is configured.
    app.middleware("http")(require_api_key)
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(connections.router, prefix="/api/v1")
    app.include_router(agents.router, prefix="/api/v1")
    app.include_router(security.router, prefix="/api/v1")

    @app.get("/api/v1/health")
    def health_check(request: Request) -> dict:
        """Liveness plus non-secret vault status."""
        current = getattr(request.app.state, "broker", None)
        return {
            "status": "ok" if current is not None else "starting",
            "version": __version__,
            "connection_types": len(current.catalog.list_types()) if current is not None else 0,
            "master_secret_source": master_secret_source()["source"],
        }

    return app


app = create_app()
