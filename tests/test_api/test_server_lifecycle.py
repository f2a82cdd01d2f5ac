"""
Tests for service wiring and the application lifespan.

``respx`` patches the HTTP transport used by the ledger clients, so the
lifespan can subscribe and poll against mocked nodes while the TestClient
talks to the app in-process.
"""

import pytest
import respx
from fastapi.testclient import TestClient

from fiber_indexer.api.server import create_app
from fiber_indexer.config import IndexerConfig
from fiber_indexer.services.indexer import IndexerServices
from tests.builders import CHECKPOINT_URL, ML0_URL, make_global_snapshot

DL1_URL = "http://dl1.test:9400"
SUBSCRIBE_URL = f"{ML0_URL}/data-application/v1/webhooks/subscribe"


# ============================================================================
# WIRING
# ============================================================================


@pytest.mark.unit
class TestFromConfig:
    def test_shared_node_is_one_client(self, test_config: IndexerConfig, event_bus):
        services = IndexerServices.from_config(test_config, bus=event_bus)

        assert [client.base_url for client in services.clients] == [ML0_URL, CHECKPOINT_URL]
        assert services.coordinator.mirror is None
        assert services.confirmations is not None
        assert services.fallback is not None
        assert services.ingestor.queue is services.queue

    def test_separate_data_l1_gets_a_mirror(self, test_config: IndexerConfig, event_bus):
        test_config.ledger.dl1_url = DL1_URL

        services = IndexerServices.from_config(test_config, bus=event_bus)

        assert [client.base_url for client in services.clients] == [
            ML0_URL,
            DL1_URL,
            CHECKPOINT_URL,
        ]
        assert services.coordinator.mirror is services.subscriber

    def test_disabled_pollers_are_not_built(self, test_config: IndexerConfig, event_bus):
        test_config.pollers.confirmation_enabled = False
        test_config.pollers.fallback_enabled = False

        services = IndexerServices.from_config(test_config, bus=event_bus)

        assert services.confirmations is None
        assert services.fallback is None
        assert [client.base_url for client in services.clients] == [ML0_URL]


# ============================================================================
# WEBHOOK SUBSCRIPTION
# ============================================================================


@pytest.mark.unit
class TestSubscribe:
    async def test_subscription_id_is_kept(self, test_config: IndexerConfig, event_bus):
        test_config.ledger.callback_url = "http://indexer.test/webhook/snapshot"
        services = IndexerServices.from_config(test_config, bus=event_bus)

        with respx.mock() as mock:
            route = mock.post(SUBSCRIBE_URL).respond(json={"id": 42})
            async with services.subscriber:
                assert await services.subscribe() == "42"

        assert services.webhook_subscription == "42"
        assert route.calls.last.request.url == SUBSCRIBE_URL

    async def test_failure_is_tolerated(self, test_config: IndexerConfig, event_bus):
        test_config.ledger.callback_url = "http://indexer.test/webhook/snapshot"
        services = IndexerServices.from_config(test_config, bus=event_bus)

        with respx.mock() as mock:
            mock.post(SUBSCRIBE_URL).respond(503)
            async with services.subscriber:
                assert await services.subscribe() is None

        assert services.webhook_subscription is None

    async def test_no_callback_skips_registration(self, test_config: IndexerConfig, event_bus):
        services = IndexerServices.from_config(test_config, bus=event_bus)

        with respx.mock() as mock:
            assert await services.subscribe() is None

        assert not mock.calls


# ============================================================================
# LIFESPAN
# ============================================================================


@pytest.mark.api
class TestLifespan:
    def test_start_and_stop_without_pollers(self, test_db, test_config, event_bus):
        test_config.pollers.confirmation_enabled = False
        test_config.pollers.fallback_enabled = False
        services = IndexerServices.from_config(test_config, bus=event_bus)

        with TestClient(create_app(services, cfg=test_config)) as client:
            assert services.queue.is_running is True
            assert client.get("/health").status_code == 200
            body = client.get("/status").json()

        assert body["materializer"]["isRunning"] is True
        assert body["poller"] is None
        assert services.queue.is_running is False

    def test_registers_webhook_and_stops_pollers(self, test_db, test_config, event_bus):
        test_config.ledger.callback_url = "http://indexer.test/webhook/snapshot"
        test_config.pollers.fallback_enabled = False
        test_config.pollers.checkpoint_batch = 0
        services = IndexerServices.from_config(test_config, bus=event_bus)

        with respx.mock(assert_all_called=False) as mock:
            subscribe = mock.post(SUBSCRIBE_URL).respond(json={"id": "sub-9"})
            mock.get(f"{CHECKPOINT_URL}/global-snapshots/latest").respond(
                json=make_global_snapshot(900)
            )
            with TestClient(create_app(services, cfg=test_config)) as client:
                body = client.get("/status").json()

        assert subscribe.called
        assert body["webhookSubscription"] == "sub-9"
        assert services.confirmations.is_running is False
        assert services.queue.is_running is False
