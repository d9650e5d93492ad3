"""
ICY Relay - Main FastAPI Application

Relays Shoutcast/Icecast streams to browsers as plain chunked audio with
permissive CORS headers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from icyrelay.config.settings import RelaySettings
from icyrelay.models import HealthStatus, RelayStatus
from icyrelay.routers import stream
from icyrelay.services.relay_service import RelayOrchestrator

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    settings: Optional[RelaySettings] = None,
    orchestrator: Optional[RelayOrchestrator] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Relay settings; read from the environment at startup if None
        orchestrator: Pre-built orchestrator (tests inject fakes here)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle - startup and shutdown."""
        app.state.settings = settings or RelaySettings()
        configure_logging(app.state.settings.log_level)
        app.state.orchestrator = orchestrator or RelayOrchestrator(app.state.settings)
        logger.info(
            "ICY relay ready (%d identities, max %d retries, idle timeout %d ms)",
            len(app.state.settings.user_agents),
            app.state.settings.max_retries,
            app.state.settings.idle_timeout_ms,
        )
        yield
        logger.info("ICY relay shutting down")

    app = FastAPI(
        title="ICY Relay",
        description="Relay Shoutcast/Icecast streams to browsers as plain audio",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS for browser players
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Range", "Icy-MetaData"],
        expose_headers=["Content-Length", "Content-Range"],
    )

    @app.get("/health", response_model=HealthStatus)
    async def health_check():
        """Health check endpoint."""
        return HealthStatus(status="healthy")

    @app.get("/relay/status", response_model=RelayStatus)
    async def relay_status(request: Request):
        """Effective relay settings, for debugging upstream trouble."""
        current = request.app.state.settings
        return RelayStatus(
            user_agents=len(current.user_agents),
            max_retries=current.max_retries,
            base_backoff_ms=current.base_backoff_ms,
            max_backoff_budget_ms=current.max_backoff_budget_ms,
            idle_timeout_ms=current.idle_timeout_ms,
            resolve_mounts=current.resolve_mounts,
        )

    # Stream routes last: the path-embedded URL route matches everything
    app.include_router(stream.router, tags=["stream"])

    return app


app = create_app()
