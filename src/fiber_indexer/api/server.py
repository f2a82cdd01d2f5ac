"""
FastAPI application for the indexer.

``create_app`` builds the application around an ``IndexerServices`` instance
and drives its lifecycle from the FastAPI lifespan:
- the database schema is created if missing
- ledger clients are opened, workers and pollers started
- the webhook callback is registered with the node (when configured)

On shutdown pollers and workers are cancelled and clients closed. Snapshot
rows whose materialization was interrupted are picked up by the reprocess
sweep on the next start, whether or not they have been confirmed since.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fiber_indexer import __version__
from fiber_indexer.api.routes import register_routes
from fiber_indexer.config import IndexerConfig, config
from fiber_indexer.db.errors import DatabaseError
from fiber_indexer.db.schema import init_database
from fiber_indexer.services.indexer import IndexerServices

logger = logging.getLogger(__name__)


def create_app(
    services: IndexerServices | None = None,
    *,
    cfg: IndexerConfig | None = None,
) -> FastAPI:
    """
    Build the indexer application.

    Args:
        services: Pre-built services. Built from ``cfg`` when omitted.
        cfg: Configuration. Defaults to the module-level ``config``.
    """
    cfg = cfg or config
    services = services or IndexerServices.from_config(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        init_database()
        await services.start()
        logger.info("Indexer started (version %s)", __version__)
        try:
            yield
        finally:
            await services.stop()
            logger.info("Indexer stopped")

    docs = cfg.docs_should_be_enabled
    app = FastAPI(
        title="Fiber Indexer",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.security.cors_origins,
        allow_credentials="*" not in cfg.security.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Database operation failed"})

    register_routes(app, services)
    return app
