"""
Main entrypoint for the League Registry API.

``create_app`` configures logging, mounts the versioned routers and
applies database migrations on startup.  The module-level ``app`` can
be served directly::

    uvicorn league_registry_api.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.v1.router import router as v1_router
from .core.config import settings
from .core.db import init_db
from .core.logging_config import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Creates the database file on first run and applies pending migrations.
    init_db()
    yield


def create_app() -> FastAPI:
    """Create and configure a FastAPI application.

    Logging is configured before anything else so that imports and
    startup can log.
    """
    setup_logging(settings.log_level, settings.log_file or None)

    app = FastAPI(title=settings.project_name, version=settings.api_version, lifespan=lifespan)
    app.include_router(v1_router, prefix="/api/v1")
    return app


app = create_app()
