"""
Shared pytest fixtures for the indexer test suite.

This module provides fixtures that are automatically available to all test files:
- Temporary test databases (via the config system's ``use_test_database``)
- A fresh event bus per test
- A fake data L1 node and update builders for the sequence coordinator
- FastAPI TestClient instances wired to hand-built services

Fakes and payload builders live in ``tests.builders``.
"""

import shutil
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from fiber_indexer.api.server import create_app
from fiber_indexer.config import IndexerConfig, use_test_database
from fiber_indexer.core.events import IndexerEventBus
from fiber_indexer.db.schema import init_database
from fiber_indexer.services.indexer import IndexerServices
from tests.builders import CHECKPOINT_URL, METAGRAPH_ID, ML0_URL, FakeChain

# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """
    Create a temporary database file for testing.

    Each test function gets its own database file, so tests never share rows.

    Yields:
        Path to temporary database file
    """
    temp_dir = tempfile.mkdtemp()
    temp_db = Path(temp_dir) / "test_indexer.db"

    with use_test_database(temp_db):
        yield temp_db

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def test_db(temp_db_path: Path) -> Generator[None, None, None]:
    """Initialize a test database with the production schema and triggers."""
    init_database()
    yield


# ============================================================================
# EVENT BUS
# ============================================================================


@pytest.fixture
def event_bus() -> IndexerEventBus:
    """A fresh bus so tests never see each other's events."""
    return IndexerEventBus()


# ============================================================================
# SEQUENCING FIXTURES
# ============================================================================


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def update_builder() -> Callable[[str], Callable[[int], dict[str, Any]]]:
    """Build ``{value, proofs}`` bodies for a fiber at a given target."""

    def for_fiber(fiber_id: str) -> Callable[[int], dict[str, Any]]:
        def build(target: int) -> dict[str, Any]:
            return {
                "value": {
                    "fiberId": fiber_id,
                    "eventName": "advance",
                    "targetSequenceNumber": target,
                },
                "proofs": [{"id": "signer-1", "signature": "sig"}],
            }

        return build

    return for_fiber


# ============================================================================
# API FIXTURES
# ============================================================================


@pytest.fixture
def services(test_db, event_bus: IndexerEventBus) -> IndexerServices:
    """Services with no network components: webhook rows are left for reprocess."""
    return IndexerServices(bus=event_bus)


@pytest.fixture
def test_config() -> IndexerConfig:
    cfg = IndexerConfig()
    cfg.ledger.ml0_url = ML0_URL
    cfg.ledger.checkpoint_url = CHECKPOINT_URL
    cfg.ledger.metagraph_id = METAGRAPH_ID
    return cfg


@pytest.fixture
def test_client(services: IndexerServices, test_config: IndexerConfig) -> TestClient:
    """TestClient without lifespan, so nothing is started or contacted."""
    return TestClient(create_app(services, cfg=test_config))
