"""Fiber Indexer: a materialized, confirmation-aware view of a metagraph ledger.

The indexer ingests snapshot notifications pushed by the ledger, materializes
the fibers (state-machine instances) they carry into SQLite, confirms each
snapshot against the checkpoint layer, and records transaction rejections.
Writers use the sequence coordinator to pick collision-free target sequence
numbers before submitting transitions.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ---------------------------------------------------------------------------
# Package version, read from pyproject.toml via importlib.metadata.
#
# If the package is imported without being installed we fall back to a
# development marker so the application can still start.
# ---------------------------------------------------------------------------
try:
    __version__: str = version("fiber-indexer")
except PackageNotFoundError:
    __version__ = "0.1.0"
