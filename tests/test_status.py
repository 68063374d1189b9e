"""Status broadcaster fan-out."""

from __future__ import annotations

import pytest

from n8n_dev_agent.agent.status import StatusBroadcaster, StatusEvent, StatusType


class TestStatusEvent:
    def test_to_dict_minimal(self):
        d = StatusEvent(StatusType.THINKING, "Analyzing your request...").to_dict()
        assert set(d) == {"type", "message", "timestamp"}
        assert d["type"] == "thinking"

    def test_to_dict_with_tool(self):
        d = StatusEvent(StatusType.TOOL_CALL, "Calling search_nodes", "search_nodes", {"query": "slack"}).to_dict()
        assert d["toolName"] == "search_nodes"
        assert d["toolArgs"] == {"query": "slack"}


class TestStatusBroadcaster:
    @pytest.mark.asyncio
    async def test_every_subscriber_gets_events(self):
        status = StatusBroadcaster()
        a, b = status.subscribe(), status.subscribe()
        status.emit(StatusType.THINKING, "hi")
        assert (await a.get()).message == "hi"
        assert (await b.get()).message == "hi"

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        status = StatusBroadcaster(queue_size=2)
        queue = status.subscribe()
        for i in range(5):
            status.emit(StatusType.TOOL_RESULT, f"event {i}")
        assert queue.qsize() == 2
        assert [queue.get_nowait().message for _ in range(2)] == ["event 3", "event 4"]

    def test_publish_without_subscribers(self):
        StatusBroadcaster().emit(StatusType.COMPLETE, "Response ready")

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        status = StatusBroadcaster()
        queue = status.subscribe()
        assert status.subscriber_count == 1
        status.unsubscribe(queue)
        status.unsubscribe(queue)
        status.emit(StatusType.ERROR, "gone")
        assert queue.empty()
        assert status.subscriber_count == 0
