"""
Route registration entry point for the FastAPI application.

Each module builds one focused router around the running ``IndexerServices``.
Handlers that only read SQLite are plain functions so FastAPI runs them in its
threadpool. Async handlers hand their database work to a thread.
"""

from fastapi import FastAPI

from fiber_indexer.api.routes import events, fibers, health, rejections, snapshots, status, webhook
from fiber_indexer.services.indexer import IndexerServices


def register_routes(app: FastAPI, services: IndexerServices) -> None:
    """Register all API routes with the FastAPI app."""
    app.include_router(health.router)
    app.include_router(webhook.router(services))
    app.include_router(status.router(services))
    app.include_router(snapshots.router(services))
    app.include_router(fibers.router(services))
    app.include_router(rejections.router(services))
    app.include_router(events.router(services))
