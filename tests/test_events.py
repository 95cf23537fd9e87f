"""Tests for the event emitter."""

import pytest

from chatflow.core.events import EventEmitter, EventType, ExecutionEvent


def event(event_type, **kwargs):
    return ExecutionEvent(type=event_type, execution_id="exec-1", **kwargs)


class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_type_filtered_subscribers(self):
        emitter = EventEmitter()
        everything, failures = [], []

        async def all_events(e):
            everything.append(e.type)

        async def failed_only(e):
            failures.append(e.type)

        emitter.on(all_events)
        emitter.on(failed_only, EventType.EXECUTION_FAILED)

        await emitter.emit(event(EventType.EXECUTION_START))
        await emitter.emit(event(EventType.EXECUTION_FAILED, error="boom"))

        assert everything == [EventType.EXECUTION_START, EventType.EXECUTION_FAILED]
        assert failures == [EventType.EXECUTION_FAILED]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_others(self):
        emitter = EventEmitter()
        seen = []

        async def broken(e):
            raise RuntimeError("subscriber down")

        async def record(e):
            seen.append(e)

        emitter.on(broken)
        emitter.on(record)

        await emitter.emit(event(EventType.NODE_START))

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_off(self):
        emitter = EventEmitter()
        seen = []

        async def record(e):
            seen.append(e)

        emitter.off(emitter.on(record))
        await emitter.emit(event(EventType.NODE_START))

        assert seen == []
        assert len(emitter) == 0


def test_to_dict_omits_unset_fields():
    data = event(EventType.NODE_COMPLETE, node_id="greet", node_type="message").to_dict()

    assert data["type"] == "node.complete"
    assert data["data"]["node_id"] == "greet"
    assert data["data"]["node_type"] == "message"
    assert "error" not in data["data"]
    assert "flow_id" not in data["data"]
