"""
Tests for the indexer event bus.

These tests verify the bus contract:

1. Events are immutable after creation
2. Sequence numbers are monotonic
3. Handlers run in registration order and their errors never reach the emitter
4. Async handlers are scheduled, not awaited inline
5. The log is bounded
"""

import asyncio

import pytest

from fiber_indexer.core.events import EventMetadata, Events, IndexerEvent, IndexerEventBus

# =============================================================================
# EVENT STRUCTURE
# =============================================================================


class TestEventStructure:
    @pytest.mark.unit
    def test_metadata_is_immutable(self):
        meta = EventMetadata.create(source="test", sequence=1)

        with pytest.raises(AttributeError):
            meta.sequence = 999  # type: ignore

    @pytest.mark.unit
    def test_event_is_immutable(self, event_bus: IndexerEventBus):
        event = event_bus.emit(Events.SNAPSHOT_INGESTED, {"ordinal": 1})

        with pytest.raises(AttributeError):
            event.type = "other"  # type: ignore

    @pytest.mark.unit
    def test_to_dict(self, event_bus: IndexerEventBus):
        event = event_bus.emit(Events.SNAPSHOT_CONFIRMED, {"ordinal": 4}, source="confirmations")

        data = event.to_dict()

        assert data["type"] == "snapshot:confirmed"
        assert data["detail"] == {"ordinal": 4}
        assert data["source"] == "confirmations"
        assert data["sequence"] == 1
        assert data["timestamp"] > 0


# =============================================================================
# EMIT AND SUBSCRIBE
# =============================================================================


class TestEmit:
    @pytest.mark.unit
    def test_sequence_is_monotonic(self, event_bus: IndexerEventBus):
        first = event_bus.emit(Events.SNAPSHOT_INGESTED)
        second = event_bus.emit(Events.SNAPSHOT_MATERIALIZED)

        assert second._meta.sequence == first._meta.sequence + 1
        assert event_bus.get_sequence() == 2

    @pytest.mark.unit
    def test_handlers_run_in_order_and_unsubscribe(self, event_bus: IndexerEventBus):
        calls: list[str] = []
        event_bus.on(Events.FORK_DETECTED, lambda e: calls.append("a"))
        unsubscribe = event_bus.on(Events.FORK_DETECTED, lambda e: calls.append("b"))

        event_bus.emit(Events.FORK_DETECTED)
        unsubscribe()
        unsubscribe()
        event_bus.emit(Events.FORK_DETECTED)

        assert calls == ["a", "b", "a"]

    @pytest.mark.unit
    def test_handler_error_is_isolated(self, event_bus: IndexerEventBus):
        seen: list[IndexerEvent] = []

        def broken(event: IndexerEvent) -> None:
            raise RuntimeError("subscriber bug")

        event_bus.on(Events.SNAPSHOT_ORPHANED, broken)
        event_bus.on(Events.SNAPSHOT_ORPHANED, seen.append)

        event = event_bus.emit(Events.SNAPSHOT_ORPHANED, {"ordinal": 9})

        assert seen == [event]
        assert event_bus.get_event_log() == [event]

    @pytest.mark.unit
    async def test_async_handler_is_scheduled(self, event_bus: IndexerEventBus):
        seen: list[int] = []

        async def handler(event: IndexerEvent) -> None:
            seen.append(event.detail["ordinal"])

        event_bus.on(Events.SNAPSHOT_INGESTED, handler)
        event_bus.emit(Events.SNAPSHOT_INGESTED, {"ordinal": 3})

        assert seen == []
        await asyncio.sleep(0)
        assert seen == [3]

    @pytest.mark.unit
    async def test_async_handler_error_is_logged(self, event_bus: IndexerEventBus, caplog):
        async def broken(event: IndexerEvent) -> None:
            raise RuntimeError("handler exploded")

        event_bus.on(Events.FORK_DETECTED, broken)
        with caplog.at_level("ERROR", logger="fiber_indexer.core.events"):
            event_bus.emit(Events.FORK_DETECTED, {"ordinal": 70})
            assert len(event_bus._handler_tasks) == 1
            for _ in range(3):
                await asyncio.sleep(0)

        assert event_bus._handler_tasks == set()
        assert "handler exploded" in caplog.text


# =============================================================================
# EVENT LOG
# =============================================================================


class TestEventLog:
    @pytest.mark.unit
    def test_log_is_bounded(self):
        small = IndexerEventBus(max_log_size=3)
        for ordinal in range(5):
            small.emit(Events.SNAPSHOT_INGESTED, {"ordinal": ordinal})

        assert [e.detail["ordinal"] for e in small.get_event_log()] == [2, 3, 4]
        assert small.get_sequence() == 5

    @pytest.mark.unit
    def test_filter_limit_and_clear(self, event_bus: IndexerEventBus):
        event_bus.emit(Events.SNAPSHOT_INGESTED, {"ordinal": 1})
        event_bus.emit(Events.SNAPSHOT_CONFIRMED, {"ordinal": 1})
        event_bus.emit(Events.SNAPSHOT_INGESTED, {"ordinal": 2})

        ingested = event_bus.get_event_log(event_type=Events.SNAPSHOT_INGESTED)
        assert [e.detail["ordinal"] for e in ingested] == [1, 2]
        assert event_bus.get_event_log(limit=1)[0].detail["ordinal"] == 2
        assert event_bus.get_event_log(limit=0) == []

        event_bus.clear_event_log()
        assert event_bus.get_event_log() == []
