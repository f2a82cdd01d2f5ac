"""Health and version endpoints."""

import platform

from fastapi import APIRouter

from fiber_indexer import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "ok", "service": "indexer"}


@router.get("/version")
async def version():
    """Installed package version and interpreter, read from package metadata."""
    return {"service": "indexer", "version": __version__, "python": platform.python_version()}
