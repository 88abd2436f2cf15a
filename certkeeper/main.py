"""
certkeeper monitoring API

Read-only views of the managed certificates and their renewal history,
served next to the renewal daemon. The app owns the daemon's lifecycle:
it is started on application startup and stopped (waiting for running
attempts) on shutdown.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from certkeeper import __version__
from certkeeper.config import Settings, load_settings
from certkeeper.core.daemon import RenewalDaemon, build_daemon
from certkeeper.endpoints import certificates, health, renewals

logger = logging.getLogger(__name__)


def create_app(daemon: RenewalDaemon | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the monitoring application.

    Args:
        daemon: Daemon to serve (built from settings on startup when omitted)
        settings: Settings used to build the daemon
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("certkeeper starting up...")
        if app.state.daemon is None:
            app.state.daemon = build_daemon(settings or load_settings())
        await app.state.daemon.start()

        yield

        try:
            await app.state.daemon.stop()
        except Exception as e:
            logger.warning(f"Error stopping renewal daemon: {e}")
        logger.info("certkeeper shutting down...")

    app = FastAPI(
        title="certkeeper",
        description="Monitoring API for the certkeeper TLS certificate renewal daemon.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
    )
    app.state.daemon = daemon

    app.include_router(health.router)
    app.include_router(certificates.router)
    app.include_router(renewals.router)

    @app.get("/", summary="API Information", tags=["Health"])
    async def root():
        return {
            "message": "certkeeper is running",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "docs_url": "/docs",
        }

    return app
