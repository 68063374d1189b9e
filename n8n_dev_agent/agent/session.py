"""Per-conversation state and the context handed to every tool call."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from n8n_dev_agent.agent.connections import NodeClassifier
from n8n_dev_agent.agent.status import StatusBroadcaster
from n8n_dev_agent.reasoning import Message

if TYPE_CHECKING:
    from n8n_dev_agent.client import N8nClient
    from n8n_dev_agent.knowledge import CapabilityIndex

MAX_VALIDATION_FAILURES = 3


@dataclass
class ToolOutcome:
    """Short-form record of one tool call, used to build the forced summary."""

    tool: str
    result: str


@dataclass
class AgentSession:
    """Mutable state for one conversation.

    validation_failures counts consecutive rejected create/update drafts; it
    is reset by a successful submission and when the give-up message is sent.
    lock serialises turns that share the session.
    """

    messages: list[Message] = field(default_factory=list)
    validation_failures: int = 0
    tool_log: list[ToolOutcome] = field(default_factory=list)
    tool_call_count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def record(self, tool: str, result: str) -> None:
        self.tool_call_count += 1
        self.tool_log.append(ToolOutcome(tool=tool, result=result))

    def start_turn(self) -> None:
        self.tool_log = []
        self.tool_call_count = 0


@dataclass
class ToolContext:
    """Everything a tool implementation may touch."""

    index: CapabilityIndex
    client: N8nClient
    session: AgentSession
    status: StatusBroadcaster = field(default_factory=StatusBroadcaster)
    classifier: NodeClassifier = field(default_factory=NodeClassifier)
    max_validation_failures: int = MAX_VALIDATION_FAILURES

    @property
    def n8n_base_url(self) -> str:
        return self.client.settings.endpoint
