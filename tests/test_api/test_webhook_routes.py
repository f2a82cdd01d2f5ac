"""
Tests for the webhook endpoints the ledger pushes to.

The test services carry no materialization queue, so accepted snapshots stay
PENDING with NULL counters, exactly as they would while the workers are busy.
"""

import pytest
from fastapi.testclient import TestClient

from fiber_indexer.core.events import Events
from fiber_indexer.db import rejections_repo, snapshots_repo
from tests.builders import make_rejection_notification


def _snapshot_body(ordinal: int = 100, snapshot_hash: str = "h100", **extra) -> dict:
    body = {
        "event": "snapshot.finalized",
        "ordinal": ordinal,
        "hash": snapshot_hash,
        "timestamp": "2026-01-01T00:00:00Z",
    }
    body.update(extra)
    return body


# ============================================================================
# SNAPSHOT NOTIFICATIONS
# ============================================================================


@pytest.mark.api
class TestSnapshotWebhook:
    def test_new_snapshot_is_accepted_pending(self, test_client: TestClient, event_bus):
        response = test_client.post("/webhook/snapshot", json=_snapshot_body())

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "ordinal": 100, "status": "PENDING"}
        stored = snapshots_repo.get_snapshot(100, "h100")
        assert stored.ledger_timestamp == "2026-01-01T00:00:00Z"
        assert len(event_bus.get_event_log(event_type=Events.SNAPSHOT_INGESTED)) == 1

    def test_repeat_delivery_is_already_indexed(self, test_client: TestClient):
        test_client.post("/webhook/snapshot", json=_snapshot_body())
        response = test_client.post("/webhook/snapshot", json=_snapshot_body())

        assert response.status_code == 200
        assert response.json()["alreadyIndexed"] is True
        assert snapshots_repo.count_snapshots() == 1

    def test_stats_are_optional_and_tolerant(self, test_client: TestClient):
        response = test_client.post(
            "/webhook/snapshot",
            json=_snapshot_body(stats={"updatesProcessed": 3, "somethingNew": 1}),
        )

        assert response.status_code == 202

    def test_competing_hash_becomes_second_row(self, test_client: TestClient):
        test_client.post("/webhook/snapshot", json=_snapshot_body(snapshot_hash="h100-a"))
        response = test_client.post(
            "/webhook/snapshot", json=_snapshot_body(snapshot_hash="h100-b")
        )

        assert response.status_code == 202
        rows = test_client.get("/snapshots/100").json()["snapshots"]
        assert [row["hash"] for row in rows] == ["h100-a", "h100-b"]

    @pytest.mark.parametrize(
        "body",
        [
            {"ordinal": 100, "timestamp": "2026-01-01T00:00:00Z"},
            {"ordinal": -1, "hash": "h", "timestamp": "2026-01-01T00:00:00Z"},
            {"ordinal": "abc", "hash": "h", "timestamp": "2026-01-01T00:00:00Z"},
            {"ordinal": 1, "hash": "", "timestamp": "2026-01-01T00:00:00Z"},
            ["not", "an", "object"],
        ],
    )
    def test_invalid_body_is_400(self, test_client: TestClient, body):
        response = test_client.post("/webhook/snapshot", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid payload"
        assert response.json()["details"]
        assert snapshots_repo.count_snapshots() == 0

    def test_non_json_body_is_400(self, test_client: TestClient):
        response = test_client.post(
            "/webhook/snapshot",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["details"][0]["msg"] == "Body is not valid JSON"


# ============================================================================
# REJECTION NOTIFICATIONS
# ============================================================================


@pytest.mark.api
class TestRejectionWebhook:
    def test_rejection_routed_by_event_field(self, test_client: TestClient):
        response = test_client.post(
            "/webhook/snapshot", json=make_rejection_notification("upd-1")
        )

        assert response.status_code == 201
        assert response.json() == {"accepted": True, "updateHash": "upd-1"}
        stored = rejections_repo.get_rejection("upd-1")
        assert stored.error_codes == ["SequenceNumberMismatch"]
        assert stored.raw_payload["rejection"]["updateHash"] == "upd-1"

    def test_repeat_rejection_is_already_indexed(self, test_client: TestClient):
        body = make_rejection_notification("upd-1")
        test_client.post("/webhook/rejection", json=body)

        response = test_client.post("/webhook/rejection", json=body)

        assert response.status_code == 200
        assert response.json()["alreadyIndexed"] is True
        assert rejections_repo.count_rejections() == 1

    def test_invalid_rejection_is_400(self, test_client: TestClient):
        body = make_rejection_notification("upd-1")
        del body["rejection"]["updateHash"]

        response = test_client.post("/webhook/snapshot", json=body)

        assert response.status_code == 400
        assert rejections_repo.count_rejections() == 0
