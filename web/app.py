"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to the
build orchestrator.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from appbuilder import __version__
from appbuilder.builds.service import build_orchestrator
from appbuilder.config import configure_logging, get_settings
from appbuilder.db import create_all_tables, get_engine, get_session_factory
from web.routers import apps, artifacts, builds, config, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables and the shared build orchestrator on
    startup, fails builds a previous process left unfinished, and cancels
    running builds on shutdown.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)
    app.state.orchestrator = build_orchestrator(settings, app.state.session_factory)
    app.state.orchestrator.recover_interrupted_builds()
    try:
        yield
    finally:
        app.state.orchestrator.shutdown(cancel_active=True)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="App Build Engine API",
        description="HTTP API for starting, tracking and downloading app builds",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(apps.router, prefix="/apps", tags=["builds"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])
    application.include_router(
        artifacts.router, prefix="/artifacts", tags=["artifacts"]
    )

    return application


# Create the default application instance
app = create_app()
