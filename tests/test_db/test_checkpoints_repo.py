"""Focused tests for ``fiber_indexer.db.checkpoints_repo``."""

from __future__ import annotations

import pytest

from fiber_indexer.db import checkpoints_repo


@pytest.mark.unit
@pytest.mark.db
def test_first_record_per_height_wins(test_db):
    assert checkpoints_repo.record_checkpoint(100, "h100", 900) is True
    assert checkpoints_repo.record_checkpoint(100, "other", 901) is False

    record = checkpoints_repo.get_checkpoint(100)
    assert (record.hash, record.checkpoint_ordinal) == ("h100", 900)
    assert record.observed_at is not None


@pytest.mark.unit
@pytest.mark.db
def test_frontier(test_db):
    assert checkpoints_repo.get_frontier() == (None, None)

    checkpoints_repo.record_checkpoint(100, "h100", 900)
    checkpoints_repo.record_checkpoint(102, "h102", 903)

    assert checkpoints_repo.get_frontier() == (102, 903)
    assert checkpoints_repo.get_checkpoint(101) is None
