"""Focused tests for ``fiber_indexer.db.rejections_repo``."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from fiber_indexer.db import connection as db_connection
from fiber_indexer.db import rejections_repo
from fiber_indexer.db.errors import DatabaseReadError, DatabaseWriteError
from fiber_indexer.db.types import RejectedTransaction


def _rejection(update_hash: str, **overrides) -> RejectedTransaction:
    values = {
        "ordinal": 100,
        "timestamp": "2026-01-01T00:00:00Z",
        "update_type": "TransitionStateMachine",
        "fiber_id": "f-1",
        "error_codes": ["SequenceNumberMismatch"],
        "errors": [{"code": "SequenceNumberMismatch", "message": "stale"}],
        "signers": ["DAG1a"],
        "target_sequence_number": 4,
    }
    values.update(overrides)
    return RejectedTransaction(update_hash=update_hash, **values)


@pytest.mark.unit
@pytest.mark.db
def test_insert_is_first_writer_wins(test_db):
    assert rejections_repo.insert_rejection(_rejection("u1", raw_payload={"x": 1})) is True
    assert rejections_repo.insert_rejection(_rejection("u1", ordinal=999)) is False

    stored = rejections_repo.get_rejection("u1")
    assert stored.ordinal == 100
    assert stored.raw_payload == {"x": 1}
    assert stored.error_codes == ["SequenceNumberMismatch"]
    assert rejections_repo.count_rejections() == 1


@pytest.mark.unit
@pytest.mark.db
def test_query_filters(test_db):
    rejections_repo.insert_rejection(_rejection("u1", ordinal=100))
    rejections_repo.insert_rejection(
        _rejection("u2", ordinal=105, fiber_id="f-2", signers=["DAG1b", "DAG1c"])
    )
    rejections_repo.insert_rejection(
        _rejection(
            "u3",
            ordinal=110,
            update_type="CreateStateMachine",
            error_codes=["InvalidSignature", "SequenceNumberMismatch"],
        )
    )

    def hashes(**filters):
        return [r.update_hash for r in rejections_repo.query_rejections(**filters).rows]

    assert hashes() == ["u3", "u2", "u1"]
    assert hashes(fiber_id="f-2") == ["u2"]
    assert hashes(update_type="CreateStateMachine") == ["u3"]
    assert hashes(signer="DAG1c") == ["u2"]
    assert hashes(error_code="InvalidSignature") == ["u3"]
    assert hashes(from_ordinal=101, to_ordinal=109) == ["u2"]


@pytest.mark.unit
@pytest.mark.db
def test_query_pagination(test_db):
    for i in range(5):
        rejections_repo.insert_rejection(_rejection(f"u{i}", ordinal=100 + i))

    page = rejections_repo.query_rejections(limit=2, offset=2)

    assert page.total == 5
    assert [r.ordinal for r in page.rows] == [102, 101]
    assert page.has_more is True
    assert rejections_repo.query_rejections(limit=2, offset=4).has_more is False


def test_rejections_repo_raises_typed_errors_on_connection_failure():
    with patch.object(db_connection, "get_connection", side_effect=Exception("db boom")):
        with pytest.raises(DatabaseWriteError):
            rejections_repo.insert_rejection(_rejection("u1"))
        with pytest.raises(DatabaseReadError):
            rejections_repo.query_rejections()
