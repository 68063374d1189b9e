"""Status events for the agent loop and a non-blocking fan-out broadcaster.

Every subscriber (an open GET /ai/status stream, a CLI spinner, a test) gets
its own bounded asyncio.Queue. publish() never awaits: when a subscriber's
queue is full its oldest event is dropped to make room, so a slow consumer
only loses its own history and never stalls the loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger("n8n_dev_agent.agent.status")

DEFAULT_QUEUE_SIZE = 100


class StatusType(str, Enum):
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    RESPONDING = "responding"
    COMPLETE = "complete"
    ERROR = "error"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StatusEvent:
    type: StatusType
    message: str
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    timestamp: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type.value, "message": self.message, "timestamp": self.timestamp}
        if self.tool_name is not None:
            d["toolName"] = self.tool_name
        if self.tool_args is not None:
            d["toolArgs"] = self.tool_args
        return d


class StatusBroadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[StatusEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[StatusEvent]:
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StatusEvent]) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: StatusEvent) -> None:
        logger.debug("status %s: %s", event.type.value, event.message)
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

    def emit(
        self,
        type: StatusType,
        message: str,
        tool_name: str | None = None,
        tool_args: dict[str, Any] | None = None,
    ) -> StatusEvent:
        event = StatusEvent(type=type, message=message, tool_name=tool_name, tool_args=tool_args)
        self.publish(event)
        return event
